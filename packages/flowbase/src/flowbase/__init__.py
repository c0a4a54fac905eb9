"""
Flowbase - shared infrastructure for the flow engine services.

Settings, logging, database engines and Redis clients. Nothing in here knows
about flows; engine code lives in flows_core.
"""
