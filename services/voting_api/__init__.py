"""
Project voting API.

HTTP service for listing projects, casting captcha-checked votes within
the voting window and reading per-IP capped vote totals. Projects and
vote records live in a remote document store reached over its Data API.
"""

__version__ = '1.0.0'
