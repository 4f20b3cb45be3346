"""Memlane: personal memory capture: live transcription, summaries and RAG over your history."""

__version__ = "0.1.0"
