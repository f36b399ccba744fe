"""Blacklist pre-filter, AI classification and staged pending judgments."""
