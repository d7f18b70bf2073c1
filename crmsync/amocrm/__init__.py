"""
AmoCRM integration module
Read API used for lead enrichment and the lead sync adapter

Чтобы избежать циклических импортов, импортируйте напрямую:
    from crmsync.amocrm.client import AmoCRMClient
"""
