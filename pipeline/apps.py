# pipeline/apps.py
import logging
import os
from django.apps import AppConfig

logger = logging.getLogger(__name__)


class PipelineConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'pipeline'
    verbose_name = 'Report pipeline'

    def ready(self):
        logger.info(f"✅ Report pipeline loaded (PID: {os.getpid()})")
