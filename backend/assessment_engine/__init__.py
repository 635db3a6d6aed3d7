"""Assessment engine backend.

This package exposes the attempt lifecycle, grading, rendering and
mastery modules used by the FastAPI application. Individual modules
contain the concrete implementations and documentation.
"""
