"""
Certify Batch - FastAPI application for generating certificates from roster data.

This package turns an uploaded roster and an HTML template with {{field}} placeholders
into one rendered certificate per row, and dispatches personalized emails for them.
"""

__version__ = "1.0.0"
__description__ = "FastAPI application for batch certificate generation"
