"""
Flows Core - marketing automation flow execution engine.

This package provides:
- Flow definition models (triggers, steps, delays, predicates)
- Adapters onto the contact datastore
- The engine: event bus, trigger matcher, delay scheduler, instance manager,
  completion aggregator and action handler registry
- Engine-owned persistence (SQLAlchemy)
- Redis Streams transport

Channel integrations (email, SMS, webhooks) live in flows_messaging and are
plugged in through the action handler registry.
"""
