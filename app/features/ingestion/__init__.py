"""
Ingestion feature package.

Everything that moves provider data into the CRM lives here: the job
queue and its claim protocol, the backoff scheduler, the kind dispatcher,
the four pipeline stages (sync, normalize, embed, extract contacts) and
the per-user usage guardrail for costed AI calls.
"""
