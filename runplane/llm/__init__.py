"""LLM provider routing guarded by per-provider health tracking."""
