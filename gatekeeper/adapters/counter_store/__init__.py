"""Fast counter store adapters.

The admission engine depends only on ``AbstractCounterStore``. Redis is the
production backend; the in-memory store serves single-process development
and tests without changing the services.
"""
