"""
Flows Messaging - channel action handlers for the flow engine.

Provides send_email, send_sms and webhook handlers plus the providers
that deliver them.
"""
