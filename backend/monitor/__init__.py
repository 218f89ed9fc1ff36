"""Server side of the usage monitor: ingestion, aggregation and analysis."""
