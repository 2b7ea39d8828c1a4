"""Shared building blocks: error hierarchy, response envelopes, pagination."""
