# rsvp_dispatch/__init__.py
"""Guest notification and voice-call bulk dispatch engine."""

__version__ = "0.1.0"
