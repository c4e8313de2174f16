"""Receiver side of the GNSS Share link."""
