"""
Recognition gateway integration for cheque field extraction.

This package contains:
- client: OpenAI gateway client wrapper with retries
- extract: Extraction adapter and response validation
- prompts: System and user prompt builders
"""
