# Middleware package init
"""
HealthGate Backend — Middleware Package
========================================

What:  Cross-cutting request handling applied to every route.

Middleware Chain (outermost first):
    Request → [CORS] → [Security Headers] → [Access Log] → [Security Pipeline] → [GZip] → Route Handler

    Why this order:
    1. CORS outermost: preflight OPTIONS requests are answered before any
       security stage counts or audits them
    2. Security headers wrap everything, including pipeline rejections
    3. Access log sees the final status of every request, short-circuited or not
    4. Security pipeline (request_id → blocklist → rate_limit → input_scan →
       authentication → authorization) decides whether the handler runs
    5. GZip innermost: only compresses handler output

    Pipeline stages live in this package as one module each; the orchestrator
    is pipeline.py.
"""
