"""Byte-range media delivery."""
