"""calsync: keep a local calendar store in step with Google Calendar."""

__version__ = "0.1.0"
