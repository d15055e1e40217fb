"""Storage backends and the resilient data-service factory.

Modules:
    base      DataService contract, BackendType, StorageError
    memory    in-memory stand-in (mock)
    json_file flat-file JSON store
    sql       document-table logic shared by the SQL backends
    sqlite    embedded relational store
    postgres  networked document store (JSONB)
    retry     backoff for transient connection errors
    factory   caching, failover, health checks, pool monitoring
"""
