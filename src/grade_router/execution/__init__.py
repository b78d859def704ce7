"""Dispatch, progressive fallback and orchestration."""
