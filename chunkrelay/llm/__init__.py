"""LLM-facing abstractions for streaming chunk exchanges.

This package defines wire dialects, the streaming transport, prompt
composition, reasoning tracking, pacing, and the per-chunk executor.
"""
