"""
Access Service package for the Exam Access Layer.

This package decides whether a candidate may sit a paid exam and keeps the
per-user entitlement record consistent across every grant path. It provides:

- app.main: API surface for access checks, grants, codes, webhooks, attempts.
- app.records: AccessRecord schema and grant evidence variants.
- app.persistence: Versioned document stores (in-memory, PostgreSQL).
- app.resolver: Merge/resolve/revoke logic over the access record.
- app.codes: Access-code issuing and atomic redemption.
- app.payments: Provider webhook normalization, verification, processing.
- app.exams: Exam catalog, attempt gate and attempt lifecycle.
- app.cache: Redis-backed cache for non-gating status reads.

Guidelines:
- No caller writes an access record directly; every grant goes through the
  resolver's merge.
- Gating decisions never come from the cache and fail closed.
"""
