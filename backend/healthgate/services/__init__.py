# Services package init
"""
HealthGate Backend — Services Layer
=====================================

What:  The security decisions themselves, independent of HTTP.
Why:   Middleware stages and routes stay thin; everything here can be
       unit-tested with a fake clock and an in-memory store.

Service Inventory:
    - counter_store:   Atomic counters and event logs (memory or Redis)
    - token_service:   Signed access/refresh tokens, rotation and revocation
    - rate_limiter:    Fixed-window policies and the brute-force tracker
    - input_guard:     Injection detector, IP blocklist, suspicious-activity monitor
    - authorization:   Gate evaluation (roles, ownership, verification)
    - audit_service:   Audit records and their sinks (database, file, log)
    - user_directory:  Credential checks and subject lookup
    - error_sink:      Where unexpected failures are reported
"""
