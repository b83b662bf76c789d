"""One-off maintenance and debugging commands."""
