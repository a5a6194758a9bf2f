"""Batch translation of localized CMS record fields through an LLM completion service."""
