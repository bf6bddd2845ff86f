"""chainpulse — real-time ledger ingestion, aggregation and alerting pipeline."""

__version__ = "0.3.0"
