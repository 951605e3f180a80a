"""
Resume Pipeline — Runtime Package

Process-level infrastructure shared by the pipeline and the HTTP layer:

  - runtime.config: Settings, feature flags, YAML + env loading
  - runtime.logging: JSON logging under the resume_pipeline namespace
  - runtime.db: SQLite / PostgreSQL backend abstraction
  - runtime.store: durable session record
  - runtime.session_lock: cross-process session lock
  - runtime.gates: human-in-the-loop gate registry
  - runtime.rate_limit: request admission control (Redis + local fallback)
  - runtime.redis_client: lazy shared Redis connection

Nothing is imported eagerly here; redis and psycopg are only loaded
by the modules that need them.
"""
