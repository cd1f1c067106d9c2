"""
Email Connectors Package
"""
from .smtp import EmailResult, SMTPConfigError, SMTPEmailProvider

__all__ = ["EmailResult", "SMTPConfigError", "SMTPEmailProvider"]
