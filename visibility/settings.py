import dj_database_url
from pathlib import Path
from decouple import config  # for loading environment variables


# --- BASE SETTINGS ---
BASE_DIR = Path(__file__).resolve().parent.parent

SECRET_KEY = config("SECRET_KEY", default="insecure-secret-for-dev")

DEBUG = config("DEBUG", default=True, cast=bool)

ALLOWED_HOSTS = ["*"]  # Update for production

CSRF_TRUSTED_ORIGINS = ['https://*.onrender.com']

PYTHON_ENVIRONMENT = config("PYTHON_ENVIRONMENT", default="development").lower()

# --- INSTALLED APPS ---
INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',

    # Third-party
    'rest_framework',
    'corsheaders',
    'django_celery_results',

    'pipeline.apps.PipelineConfig',
]

# --- MIDDLEWARE ---
MIDDLEWARE = [
    'corsheaders.middleware.CorsMiddleware',  # must be before CommonMiddleware
    'django.middleware.common.CommonMiddleware',

    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'visibility.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.debug',
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'visibility.wsgi.application'

# --- DATABASE ---
DATABASES = {
    'default': dj_database_url.config(
        default=config('DATABASE_URL', default=f"sqlite:///{BASE_DIR / 'db.sqlite3'}"),
        conn_max_age=600,
        ssl_require=config('DATABASE_SSL_REQUIRE', default=False, cast=bool),
    )
}

# --- PASSWORDS / AUTH ---
AUTH_PASSWORD_VALIDATORS = []

# --- INTERNATIONALIZATION ---
LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

# --- STATIC FILES ---
STATIC_URL = 'static/'

# --- DEFAULT PRIMARY KEY ---
DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# --- REST FRAMEWORK CONFIG ---
REST_FRAMEWORK = {
    'DEFAULT_RENDERER_CLASSES': [
        'rest_framework.renderers.JSONRenderer',
    ],
    'DEFAULT_PARSER_CLASSES': [
        'rest_framework.parsers.JSONParser',
    ]
}

# --- CORS ---
CORS_ALLOW_ALL_ORIGINS = True

# --- LOGGING ---
LOG_LEVEL = config("LOG_LEVEL", default="INFO")

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'simple': {
            'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'simple',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
}

if PYTHON_ENVIRONMENT != 'development':
    LOGGING['loggers'] = {
        name: {'level': 'WARNING'} for name in ('httpx', 'urllib3', 'requests', 'http.client')
    }

# --- CELERY ---
CELERY_BROKER_URL = config('REDIS_URL', default='redis://localhost:6379/0')
CELERY_RESULT_BACKEND = 'django-db'
CELERY_WORKER_CONCURRENCY = 1  # Critical: Only 1 worker process!
CELERY_WORKER_MAX_TASKS_PER_CHILD = 10  # Recycle workers periodically
CELERY_TIMEZONE = TIME_ZONE

REDIS_URL = CELERY_BROKER_URL
REDIS_MAX_CONNECTIONS = config("REDIS_MAX_CONNECTIONS", default=10, cast=int)

# --- PIPELINE ---
PIPELINE_BATCH_LIMIT = config("PIPELINE_BATCH_LIMIT", default=5, cast=int)
PIPELINE_MAX_ATTEMPTS = config("PIPELINE_MAX_ATTEMPTS", default=3, cast=int)
PIPELINE_RETRY_BACKOFF_SECONDS = config("PIPELINE_RETRY_BACKOFF_SECONDS", default=60, cast=int)
PIPELINE_RETRY_BACKOFF_MAX_SECONDS = config("PIPELINE_RETRY_BACKOFF_MAX_SECONDS", default=1800, cast=int)
PIPELINE_JOB_TIMEOUT_SECONDS = config("PIPELINE_JOB_TIMEOUT_SECONDS", default=1800, cast=int)  # 0 disables
PIPELINE_STALE_JOB_MINUTES = config("PIPELINE_STALE_JOB_MINUTES", default=90, cast=int)
PIPELINE_JOB_RETENTION_DAYS = config("PIPELINE_JOB_RETENTION_DAYS", default=30, cast=int)
PIPELINE_POLL_INTERVAL_SECONDS = config("PIPELINE_POLL_INTERVAL_SECONDS", default=120, cast=int)
PIPELINE_TICK_LOCK_TIMEOUT_SECONDS = config("PIPELINE_TICK_LOCK_TIMEOUT_SECONDS", default=3600, cast=int)

# --- ACCOUNT SCHEDULER ---
SCHEDULER_RESERVE_WINDOW_MINUTES = config("SCHEDULER_RESERVE_WINDOW_MINUTES", default=15, cast=int)
SCHEDULER_MINUTES_PER_PROMPT = config("SCHEDULER_MINUTES_PER_PROMPT", default=2.5, cast=float)
SCHEDULER_DEFAULT_BATCH_SIZE = config("SCHEDULER_DEFAULT_BATCH_SIZE", default=3, cast=int)
SCHEDULER_DEFAULT_WAIT_MINUTES = config("SCHEDULER_DEFAULT_WAIT_MINUTES", default=15, cast=int)
SCHEDULER_LEASE_MINUTES = config("SCHEDULER_LEASE_MINUTES", default=10, cast=int)
ONBOARDING_TOTAL_PROMPTS = config("ONBOARDING_TOTAL_PROMPTS", default=30, cast=int)

# --- AUTOMATION SESSION ---
AUTOMATION_DRIVER_FACTORY = config("AUTOMATION_DRIVER_FACTORY", default="")
AUTOMATION_SETTLE_SECONDS = config("AUTOMATION_SETTLE_SECONDS", default=5.0, cast=float)
AUTOMATION_POLL_INTERVAL_SECONDS = config("AUTOMATION_POLL_INTERVAL_SECONDS", default=1.5, cast=float)
AUTOMATION_STABLE_POLLS = config("AUTOMATION_STABLE_POLLS", default=3, cast=int)
AUTOMATION_MAX_POLLS = config("AUTOMATION_MAX_POLLS", default=40, cast=int)

# --- EXTERNAL SERVICES ---
OPENROUTER_API_KEY = config("OPENROUTER_API_KEY", default="")
OPENROUTER_BASE_URL = config("OPENROUTER_BASE_URL", default="https://openrouter.ai/api/v1")
CLASSIFIER_MODEL = config("CLASSIFIER_MODEL", default="google/gemini-2.5-flash")
TAVILY_API_KEY = config("TAVILY_API_KEY", default="")
TAVILY_EXTRACT_URL = config("TAVILY_EXTRACT_URL", default="https://api.tavily.com/extract")
EXTRACT_MAX_RETRIES = config("EXTRACT_MAX_RETRIES", default=3, cast=int)
RATE_LIMIT_MAX = config("RATE_LIMIT_MAX", default=800, cast=int)
RATE_INTERVAL_S = config("RATE_INTERVAL_S", default=60, cast=float)
