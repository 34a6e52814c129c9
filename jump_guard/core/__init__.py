"""
Core modules for Jump Guard.

This package contains the generation pipeline: response parsing, retry
policy, prompt building and the credit-gated orchestrator.
"""
