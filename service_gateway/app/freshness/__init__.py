"""
Content freshness package.

Per-module freshness policies and the ledger that records which ingested
content is current, which is historical, and every refresh attempt.
"""
