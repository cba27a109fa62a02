"""
opsdash — Operations Dashboard Backend
=======================================
Google sign-in, a role-gated user directory and a live stream of host and
cluster metrics for an operations dashboard.

Package layout::

    opsdash/
    ├── __main__.py        # python -m opsdash → uvicorn
    ├── config.py          # environment (+ optional YAML) → typed config
    ├── clock.py           # monotonic-safe UTC clock, random ids
    ├── errors.py          # typed failure taxonomy → HTTP statuses
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine, schema bootstrap, async helper
    │   └── models.py      # User model, Role / UserStatus enums
    ├── services/
    │   ├── identity.py    # Google credential verification
    │   ├── session.py     # HS256 session tokens
    │   ├── role_policy.py # email → role rules
    │   ├── user_store.py  # user directory persistence
    │   ├── metrics_source.py  # psutil + Kubernetes sampling
    │   └── hub.py         # one sample per tick, fanned out to sockets
    └── api/
        ├── main.py        # FastAPI app factory + lifespan
        ├── deps.py        # service container, auth dependencies
        ├── errors.py      # exception handlers
        ├── auth.py        # /auth/* endpoints
        └── routes/        # /api/users, /api/metrics, /ws
"""

__version__ = "1.0.0"
