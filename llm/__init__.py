"""
LLM integration for SMS transaction classification.

This package contains:
- classify: Classifier interface and LLM-backed implementation
- client: Chat-completions REST client wrapper
- prompts: System and user prompt builders
"""
