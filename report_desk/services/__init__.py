"""Text extraction and validation for order reports."""
