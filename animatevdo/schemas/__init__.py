"""Pydantic schemas for stage content and the HTTP API."""
