"""shotbot: daily screenshot tickets logged to Google Sheets and Drive."""

__version__ = "0.4.0"
