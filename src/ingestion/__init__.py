"""
Ingestion layer for the gig listings pipeline.

This package takes raw listings from venue sources through normalization,
deduplication and persistence, and keeps a record of every run.

Key Components:
- Source adapters: produce raw listing records for one source
- GigNormalizer: raw record -> canonical Gig
- GigDeduplicator: classify gigs against stored state
- PersistenceCoordinator: chunked bulk upserts with per-record outcomes
- RunTracker: ScraperRun lifecycle and the error log
- IngestionPipeline / PipelineOrchestrator: one run per source, many sources in parallel
"""
