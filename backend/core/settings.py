"""
Django settings for the one-time share service.

Environment variables are read here, once, at process start. Services never
consult os.environ themselves; they receive a ShareOptions built from these
settings (see shares.options).
"""

import os
from datetime import timedelta
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default):
    return os.environ.get(name, str(default)).strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    return int(os.environ.get(name, default))


SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'dev-only-insecure-secret-key')
DEBUG = _env_bool('DJANGO_DEBUG', False)
ALLOWED_HOSTS = [h.strip() for h in os.environ.get('DJANGO_ALLOWED_HOSTS', '*').split(',') if h.strip()]

INSTALLED_APPS = [
    'django.contrib.contenttypes',
    'django.contrib.auth',
    'rest_framework',
    'django_filters',
    'contracts',
    'shares.apps.SharesConfig',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.middleware.common.CommonMiddleware',
]

ROOT_URLCONF = 'core.urls'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        'OPTIONS': {
            'timeout': _env_int('DB_CONNECT_TIMEOUT', 5),
        },
        # On disk so threads in tests share one database and honour the timeout
        'TEST': {
            'NAME': os.environ.get('SQLITE_TEST_PATH', str(BASE_DIR / 'test_db.sqlite3')),
        },
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'

REST_FRAMEWORK = {
    'DEFAULT_FILTER_BACKENDS': ['django_filters.rest_framework.DjangoFilterBackend'],
    'DEFAULT_AUTHENTICATION_CLASSES': [],
    'DEFAULT_PERMISSION_CLASSES': [],
    'UNAUTHENTICATED_USER': None,
}

# One-time share configuration
SHARE_RETENTION_DAYS = _env_int('FILE_RETENTION_DAYS', 30)
SHARE_GRACE_PERIOD_DAYS = _env_int('FILE_GRACE_PERIOD_DAYS', 7)
SHARE_CLEANUP_INTERVAL_MINUTES = _env_int('CLEANUP_INTERVAL_MINUTES', 1440)
SHARE_STORAGE_ROOT = os.environ.get('STORAGE_ROOT', './storage')
SHARE_MAX_UPLOAD_BYTES = _env_int('MAX_UPLOAD_BYTES', 100 * 1024 * 1024)
SHARE_STRAY_MIN_AGE_MINUTES = _env_int('STRAY_BLOB_MIN_AGE_MINUTES', 60)
SHARE_ORPHAN_MIN_AGE_MINUTES = _env_int('ORPHAN_BLOB_MIN_AGE_MINUTES', 10)
# A sweep holding the lease past this is presumed dead
SHARE_SWEEP_LEASE_MINUTES = _env_int('SWEEP_LEASE_MINUTES', 2 * SHARE_CLEANUP_INTERVAL_MINUTES)
SHARE_BASE_URL = os.environ.get('APP_BASE_URL', '')
SHARE_OWNER_ID_HEADER = os.environ.get('OWNER_ID_HEADER', 'X-Owner-Id')

# Uploads above this stay on disk in a temp file instead of memory
FILE_UPLOAD_MAX_MEMORY_SIZE = 2 * 1024 * 1024
DATA_UPLOAD_MAX_MEMORY_SIZE = None

# Celery
CELERY_BROKER_URL = os.environ.get('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_TASK_ALWAYS_EAGER = _env_bool('CELERY_TASK_ALWAYS_EAGER', False)
CELERY_TASK_IGNORE_RESULT = True
CELERY_TASK_ROUTES = {
    'shares.tasks.delete_blob': {'queue': 'cleanup'},
    'shares.tasks.sweep_retention': {'queue': 'cleanup'},
}
CELERY_BEAT_SCHEDULE = {
    'retention-sweep': {
        'task': 'shares.tasks.sweep_retention',
        'schedule': timedelta(minutes=SHARE_CLEANUP_INTERVAL_MINUTES),
    },
}

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '%(asctime)s %(levelname)s %(name)s: %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
    'loggers': {
        'shares': {
            'handlers': ['console'],
            'level': os.environ.get('DJANGO_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
