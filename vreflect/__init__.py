"""Verse reflection: grade, correct and finalize translated text with an LLM."""
