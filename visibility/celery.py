import os
from celery import Celery
from celery.schedules import crontab

os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'visibility.settings')

app = Celery('visibility')
app.config_from_object('django.conf:settings', namespace='CELERY')

# One tick at a time; stage executors may hold a browser session for minutes
app.conf.worker_pool = 'solo'
app.conf.worker_concurrency = 1
app.conf.broker_transport_options = {
    'visibility_timeout': 3600,
    'max_connections': 3
}

app.autodiscover_tasks()


@app.on_after_finalize.connect
def setup_periodic_tasks(sender, **kwargs):
    from django.conf import settings

    sender.add_periodic_task(
        float(settings.PIPELINE_POLL_INTERVAL_SECONDS),
        sender.signature('pipeline.tasks.process_pending_jobs'),
        name='process pending report jobs',
    )
    sender.add_periodic_task(
        300.0,
        sender.signature('pipeline.tasks.recover_stale_jobs'),
        name='fail orphaned running jobs',
    )
    sender.add_periodic_task(
        crontab(hour=3, minute=30),
        sender.signature('pipeline.tasks.cleanup_completed_jobs'),
        name='purge old completed jobs',
    )
