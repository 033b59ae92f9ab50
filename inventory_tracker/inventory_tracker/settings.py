"""
Django settings for the inventory_tracker project.

Every deployment-specific value is read from the environment.
"""

import os
from pathlib import Path

from django.core.exceptions import ImproperlyConfigured

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ImproperlyConfigured(f'{name} must be an integer') from exc


DEBUG = _env_bool('DJANGO_DEBUG', False)

# Development fallback; deployments set DJANGO_SECRET_KEY.
SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY', 'insecure-development-key')

ALLOWED_HOSTS = [host for host in os.environ.get('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',') if host]

INSTALLED_APPS = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django_prometheus',
    'core',
    'inventory',
]

MIDDLEWARE = [
    'django_prometheus.middleware.PrometheusBeforeMiddleware',
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'core.middleware.LoggingMiddleware',
    'inventory.middleware.KeyStoreMiddleware',
    'django_prometheus.middleware.PrometheusAfterMiddleware',
]

ROOT_URLCONF = 'inventory_tracker.urls'
WSGI_APPLICATION = 'inventory_tracker.wsgi.application'

DATABASES = {
    'default': {
        'ENGINE': 'django.db.backends.sqlite3',
        'NAME': os.environ.get('INVENTORY_DB_PATH', str(BASE_DIR / 'db.sqlite3')),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

USE_TZ = True
TIME_ZONE = 'UTC'

# Encryption backfill
INVENTORY_PROJECT_ID = os.environ.get('INVENTORY_PROJECT_ID', 'local-dev')
INVENTORY_MIGRATION_PAGE_SIZE = _env_int('INVENTORY_MIGRATION_PAGE_SIZE', 500)
INVENTORY_DATABASE_ALIAS = 'default'

# Per-session key caches
INVENTORY_KEY_STORE_MAX_SESSIONS = _env_int('INVENTORY_KEY_STORE_MAX_SESSIONS', 256)
INVENTORY_KEY_STORE_PRUNE_INTERVAL = _env_int('INVENTORY_KEY_STORE_PRUNE_INTERVAL', 60)

LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'request_context': {
            '()': 'core.middleware.RequestContextFilter',
        },
    },
    'formatters': {
        'json': {
            '()': 'core.logging_formatters.StructuredJSONFormatter',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'json',
            'filters': ['request_context'],
        },
    },
    'loggers': {
        'inventory': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
        'alerts': {
            'handlers': ['console'],
            'level': 'ERROR',
            'propagate': False,
        },
    },
    'root': {
        'handlers': ['console'],
        'level': 'WARNING',
    },
}
