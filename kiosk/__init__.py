"""Kiosk queue-management backend."""
