"""
UTILITIES PACKAGE
=================

Helpers used by the services (no HTTP routing, no business logic):

  retry - with_retry(fn): awaits fn(); on failure retries with exponential backoff (content search, quota check).
  text  - mask_token(token): shortens secrets for log lines.
          token_scope(token): hashed per-user namespace for shared cache keys.
"""
