"""Resumable crawler for the follow graph of a rate-limited social API."""
