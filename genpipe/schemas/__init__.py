"""Pydantic models for requests, results, structured documents and scenes."""
