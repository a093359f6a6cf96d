"""LLM-backed agents: misconception explanations and question generation."""
