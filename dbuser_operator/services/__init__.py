"""
Services used by a reconciliation pass.

Engine clients, the Secrets Manager client, the connection string resolver,
Kubernetes access, secret payload rendering, status projection, metrics and
the reconciler that ties them together.
"""
