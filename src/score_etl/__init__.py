"""score_etl: resumable, chunked ingestion of exam-score CSV files into PostgreSQL."""
