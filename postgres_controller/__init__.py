"""Kubernetes controller managing roles and databases on an external PostgreSQL server"""

__version__ = "1.0.0"
