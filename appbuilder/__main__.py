"""Allow running appbuilder as ``python -m appbuilder``."""

from appbuilder.cli import app

app()
