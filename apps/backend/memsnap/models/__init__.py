"""Pydantic models for API payloads and stored documents."""
