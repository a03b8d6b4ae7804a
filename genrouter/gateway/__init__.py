"""Generation routing layer.

Sits between application callers and third-party generative-AI backends:
  - Config Snapshot Loader (immutable routing config, periodic refresh)
  - Tenant Authenticator & Quota Gate
  - Request Fingerprinter & Result Cache (TTL + request coalescing)
  - Alias Resolver (deterministic candidate ordering)
  - Failover Dispatcher with per-provider Circuit Breaker
  - Provider Adapters & Response Normalizer (unified DTO)
  - Usage Ledger
"""
