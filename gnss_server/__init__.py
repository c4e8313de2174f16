"""Source side of the GNSS Share link."""
