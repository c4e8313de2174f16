"""Shared wire codec, models and runtime helpers for the GNSS Share link."""
