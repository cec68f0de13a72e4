"""Multi-source quiz-night ingestion pipeline."""
