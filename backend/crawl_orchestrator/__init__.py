"""Competitor crawl orchestration service."""
