"""
Utility modules for crmsync
Security, monitoring, log sink, helpers

Чтобы избежать циклических импортов, импортируйте напрямую:
    from crmsync.utils.security import SecurityManager
    from crmsync.utils.monitoring import MonitoringManager
    from crmsync.utils.log_sink import LogSink
"""
