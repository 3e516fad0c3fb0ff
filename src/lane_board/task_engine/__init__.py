"""Lane board task engine.

This package provides the task model, the storage adapters and the
service that validates, persists and announces every board mutation.
"""
