# apps/api/main.py
from apps.api.app_factory import create_app
from apps.workers.client_loader import get_pipeline

# settings and clients are built on the first jobs request, not at import
app = create_app(pipeline_provider=get_pipeline)
