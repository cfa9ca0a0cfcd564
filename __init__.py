"""Bulk background job orchestration engine."""
