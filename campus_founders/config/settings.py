"""
Django settings for the Campus Founders client.

The client has no database of its own: Django provides the cache framework
(query cache and persisted session token), settings, logging configuration,
management commands and the test runner.
"""
import os
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent

SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'campus-founders-client-insecure-key')

DEBUG = os.getenv('DEBUG', 'false').lower() == 'true'

INSTALLED_APPS = [
    'rest_framework',
    'campus_founders.core',
    'campus_founders.social',
    'campus_founders.startups',
    'campus_founders.investments',
]

DATABASES = {}

USE_TZ = True
TIME_ZONE = 'UTC'

# ==================== REST BACKEND ====================

CAMPUS_FOUNDERS_API_URL = os.getenv('CAMPUS_FOUNDERS_API_URL', 'http://localhost:5001/api')

# Seconds; unset means the transport default (no client-side timeout)
_request_timeout = os.getenv('CAMPUS_FOUNDERS_REQUEST_TIMEOUT', '')
CAMPUS_FOUNDERS_REQUEST_TIMEOUT = float(_request_timeout) if _request_timeout else None

# ==================== CACHES ====================

# Query cache TTLs (in seconds)
QUERY_STALE_TIME = int(os.getenv('QUERY_STALE_TIME', '0'))  # refetch on every read by default
QUERY_GC_TIME = int(os.getenv('QUERY_GC_TIME', '300'))  # 5 minutes of inactivity

QUERY_CACHE_ALIAS = 'default'
SESSION_CACHE_ALIAS = 'session'

SESSION_DIR = os.getenv(
    'CAMPUS_FOUNDERS_SESSION_DIR',
    str(Path.home() / '.campus_founders' / 'session'),
)

REDIS_URL = os.getenv('REDIS_URL', '')

if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django_redis.cache.RedisCache',
            'LOCATION': REDIS_URL,
            'TIMEOUT': QUERY_GC_TIME,
            'KEY_PREFIX': 'campus_founders',
            'OPTIONS': {
                'CLIENT_CLASS': 'django_redis.client.DefaultClient',
                # Cache failures must not break API calls
                'IGNORE_EXCEPTIONS': True,
            },
        },
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'campus-founders-queries',
            'TIMEOUT': QUERY_GC_TIME,
        },
    }

# Persisted bearer token survives restarts
CACHES[SESSION_CACHE_ALIAS] = {
    'BACKEND': 'django.core.cache.backends.filebased.FileBasedCache',
    'LOCATION': SESSION_DIR,
    'TIMEOUT': None,
}

# ==================== LOGGING ====================

LOG_LEVEL = os.getenv('CAMPUS_FOUNDERS_LOG_LEVEL', 'INFO').upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{levelname} {asctime} {name} {message}',
            'style': '{',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'verbose',
        },
    },
    'loggers': {
        'campus_founders': {
            'handlers': ['console'],
            'level': LOG_LEVEL,
            'propagate': False,
        },
    },
}
