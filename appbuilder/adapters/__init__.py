"""Adapters implementing the interfaces in appbuilder.ports.

Production adapters live in aws, docker and pack; memory holds the
in-memory versions used by the tests. Production adapters are imported
lazily by the CLI so that boto3 and docker are only loaded when needed.
"""
