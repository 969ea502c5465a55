"""Observability helpers: metric registry, JSON logs, trace ids, request instrumentation.

Metrics live in an explicitly constructed registry owned by the app, so tests can
build a fresh one per case; nothing here is a module-level singleton.
"""
