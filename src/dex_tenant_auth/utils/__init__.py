"""Environment and configuration helpers."""
