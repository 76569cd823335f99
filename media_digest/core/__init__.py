"""
Core streaming pipeline for the media digest application.

This package contains the subprocess audio pipeline, media acquisition,
blob storage routing, transcription, summarization, progress tracking and
the orchestrator that drives one request end-to-end.
"""
