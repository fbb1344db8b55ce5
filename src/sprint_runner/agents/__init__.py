"""Worker capability registry, session coordinator and scheduler."""
