"""HTTP interface of the kiosk queue service."""
