from django.urls import path
from .views import process_jobs
from .views import create_report
from .views import report_status
from .views import system_capacity
from .views import reinstate_account
from .views import start_onboarding
from .views import health_check
urlpatterns = [
    path('jobs/process/', process_jobs),
    path('reports/', create_report),
    path('reports/<uuid:report_id>/status/', report_status),
    path('capacity/', system_capacity),
    path('accounts/<uuid:account_id>/reinstate/', reinstate_account),
    path('onboarding/start/', start_onboarding),
    path('healthcheck/', health_check),
]
