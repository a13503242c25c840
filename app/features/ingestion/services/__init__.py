"""
Service layer for the ingestion feature: backoff, dispatch, the runner
and the usage guardrail.
"""
