from .log import AuditLog

__all__ = ["AuditLog"]
