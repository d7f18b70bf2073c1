"""
Webhook pipeline: events, conditions, enrichment, dispatch and processing

Чтобы избежать циклических импортов, импортируйте напрямую:
    from crmsync.webhooks.processor import WebhookProcessor
    from crmsync.webhooks.dispatcher import ActionDispatcher, AdapterPool
    from crmsync.webhooks.conditions import evaluate_conditions
"""
