"""
Database user operator.

Reconciles ``Database`` custom resources against a relational engine
(PostgreSQL or MySQL/MariaDB) and AWS Secrets Manager.
"""

__version__ = "1.0.0"
