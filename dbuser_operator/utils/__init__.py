"""
Utility helpers for the operator.

Import directly from submodules:
from dbuser_operator.utils.retry import classify_error, BackoffPolicy
from dbuser_operator.utils.security import generate_password
"""
