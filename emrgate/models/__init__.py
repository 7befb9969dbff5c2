"""EMRGate models package.

  - block.py: response builders for WAF blocks and session error envelopes
"""
