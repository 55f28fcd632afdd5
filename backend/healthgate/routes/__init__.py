# Routes package init
"""
HealthGate Backend — API Routes Package
=========================================

Route Inventory:
    - health.py:    GET    /health
    - auth.py:      POST   /api/v1/auth/login
                    POST   /api/v1/auth/refresh
                    POST   /api/v1/auth/logout
                    GET    /api/v1/auth/me
                    POST   /api/v1/auth/forgot-password
    - users.py:     GET    /api/v1/users/{user_id}
    - security.py:  POST   /api/v1/security/blocked-ips
                    DELETE /api/v1/security/blocked-ips/{ip}
                    POST   /api/v1/security/csp-violation

Design Principle:
    Routes are THIN. Who may call them, and how often, is decided by the
    security pipeline from middleware/routing.py before a handler runs;
    handlers only do the work and refine the audit record.
"""
