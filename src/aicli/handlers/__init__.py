"""Handlers for the network-facing tools: search, scrape, e-mail and finance."""

from aicli.handlers.email import EmailSender
from aicli.handlers.finance import AlphaVantage
from aicli.handlers.scrape import Scraper, extract_readable_text
from aicli.handlers.search import WebSearch

__all__ = [
    "AlphaVantage",
    "EmailSender",
    "Scraper",
    "WebSearch",
    "extract_readable_text",
]
