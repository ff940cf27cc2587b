"""Bidirectional sync between a booking system and Outlook room calendars."""

__version__ = "0.1.0"
