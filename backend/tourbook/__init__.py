"""Tour catalog, accounts, reviews and paid bookings."""

__version__ = "1.0.0"
