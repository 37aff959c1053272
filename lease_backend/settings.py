from pathlib import Path
from datetime import timedelta
import os
from urllib.parse import urlparse, parse_qs, unquote
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent

# Load environment variables from this project reliably (do not depend on CWD).
load_dotenv(dotenv_path=BASE_DIR / '.env', override=False)


def _env_flag(name: str, default: str = 'False') -> bool:
    return (os.getenv(name, default) or '').strip().lower() in ('1', 'true', 'yes', 'y', 'on')


SECRET_KEY = os.getenv('DJANGO_SECRET_KEY', 'django-insecure-dev-key-12345')

DEBUG = _env_flag('DEBUG')

# When enabled, refuse to run in production with placeholder secrets.
SECURITY_STRICT = _env_flag('SECURITY_STRICT')

if DEBUG:
    ALLOWED_HOSTS = ['*']
else:
    _hosts = os.getenv('ALLOWED_HOSTS', 'localhost,127.0.0.1,testserver').strip()
    ALLOWED_HOSTS = [h.strip() for h in _hosts.split(',') if h.strip()]

if SECURITY_STRICT and (not DEBUG) and SECRET_KEY == 'django-insecure-dev-key-12345':
    raise RuntimeError('DJANGO_SECRET_KEY must be set when SECURITY_STRICT is enabled')

INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'rest_framework',
    'rest_framework_simplejwt',
    'drf_spectacular',
    'contracts',
]

MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'lease_backend.middleware.RequestIdMiddleware',
    'lease_backend.middleware.MetricsMiddleware',
    'lease_backend.middleware.AuditLoggingMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]

ROOT_URLCONF = 'lease_backend.urls'

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

WSGI_APPLICATION = 'lease_backend.wsgi.application'
ASGI_APPLICATION = 'lease_backend.asgi.application'

# Database: SQLite for local/dev, Postgres when DATABASE_URL is provided.
DATABASE_URL = os.getenv('DATABASE_URL', '').strip()


def _parse_database_url(database_url: str) -> dict:
    """Parse a Postgres DATABASE_URL into Django DATABASES['default'] keys."""
    parsed = urlparse(database_url)
    scheme = (parsed.scheme or '').lower()
    if scheme not in ('postgres', 'postgresql'):
        raise ValueError('DATABASE_URL must start with postgresql://')

    name = (parsed.path or '').lstrip('/') or 'postgres'
    qs = parse_qs(parsed.query or '')
    sslmode = (qs.get('sslmode', [None])[0] or os.getenv('DB_SSLMODE', 'prefer'))

    return {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': name,
        'USER': unquote(parsed.username or ''),
        'PASSWORD': unquote(parsed.password or ''),
        'HOST': parsed.hostname or '',
        'PORT': str(parsed.port or 5432),
        'CONN_MAX_AGE': int(os.getenv('DB_CONN_MAX_AGE', '60')),
        'CONN_HEALTH_CHECKS': True,
        'OPTIONS': {
            'sslmode': sslmode,
            'connect_timeout': int(os.getenv('DB_CONNECT_TIMEOUT', '20')),
        },
    }


if DATABASE_URL:
    DATABASES = {'default': _parse_database_url(DATABASE_URL)}
else:
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': os.getenv('SQLITE_PATH', str(BASE_DIR / 'db.sqlite3')),
        }
    }

AUTH_PASSWORD_VALIDATORS = [
    {'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator'},
    {'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator'},
    {'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator'},
    {'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator'},
]

LANGUAGE_CODE = 'en-us'
TIME_ZONE = 'UTC'
USE_I18N = True
USE_TZ = True

STATIC_URL = 'static/'
STATIC_ROOT = BASE_DIR / 'staticfiles'

# Exported contract PDFs are written through the default storage.
MEDIA_URL = '/media/'
MEDIA_ROOT = Path(os.getenv('MEDIA_ROOT', str(BASE_DIR / 'media')))

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

REST_FRAMEWORK = {
    'DEFAULT_AUTHENTICATION_CLASSES': [
        'rest_framework_simplejwt.authentication.JWTAuthentication',
        'rest_framework.authentication.SessionAuthentication',
    ],
    'DEFAULT_PERMISSION_CLASSES': [
        'rest_framework.permissions.IsAuthenticated',
    ],
    'DEFAULT_SCHEMA_CLASS': 'lease_backend.schema.FeatureAutoSchema',
    'DEFAULT_PAGINATION_CLASS': 'rest_framework.pagination.PageNumberPagination',
    'PAGE_SIZE': 50,
}

SIMPLE_JWT = {
    'ACCESS_TOKEN_LIFETIME': timedelta(hours=24),
    'REFRESH_TOKEN_LIFETIME': timedelta(days=7),
    'ALGORITHM': 'HS256',
    'SIGNING_KEY': SECRET_KEY,
    'AUTH_HEADER_TYPES': ('Bearer',),
}

# OpenAPI / Swagger (drf-spectacular)
SPECTACULAR_SETTINGS = {
    'TITLE': os.getenv('OPENAPI_TITLE', 'Lease Contract Signing API'),
    'DESCRIPTION': os.getenv(
        'OPENAPI_DESCRIPTION',
        'Contract approval, multi-party e-signature and PDF export (Django REST Framework).'
    ),
    'VERSION': os.getenv('OPENAPI_VERSION', '1.0.0'),
    'SECURITY': [{'bearerAuth': []}],
    'COMPONENT_SPLIT_REQUEST': True,
    'SERVE_INCLUDE_SCHEMA': False,
    'COMPONENTS': {
        'securitySchemes': {
            'bearerAuth': {
                'type': 'http',
                'scheme': 'bearer',
                'bearerFormat': 'JWT',
            }
        }
    },
}

# ---------------------------------------------------------------------------
# Electronic signature provider
# ---------------------------------------------------------------------------

# 'simulated' runs the deterministic time-based provider; 'http' calls ESIGN_BASE_URL.
ESIGN_PROVIDER = (os.getenv('ESIGN_PROVIDER') or 'simulated').strip().lower()

# Where the provider posts status callbacks (signer viewed/signed/declined).
ESIGN_CALLBACK_URL = (os.getenv('ESIGN_CALLBACK_URL') or 'http://localhost:8000/api/v1/esign/callback/').strip()

# Shared secret expected in the X-Esign-Secret header of provider callbacks.
ESIGN_CALLBACK_SECRET = (os.getenv('ESIGN_CALLBACK_SECRET') or '').strip()

# Validity window of a signing request sent through the HTTP provider.
ESIGN_EXPIRES_IN_DAYS = int(os.getenv('ESIGN_EXPIRES_IN_DAYS') or '30')

# Export page format in millimetres (A4 by default).
CONTRACT_EXPORT_PAGE_SIZE = (
    float(os.getenv('CONTRACT_EXPORT_PAGE_WIDTH_MM') or '210'),
    float(os.getenv('CONTRACT_EXPORT_PAGE_HEIGHT_MM') or '297'),
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

LOG_LEVEL = (os.getenv('LOG_LEVEL') or 'INFO').strip().upper()

LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'filters': {
        'request_id': {
            '()': 'lease_backend.middleware.RequestIdLogFilter',
        },
    },
    'formatters': {
        'standard': {
            'format': '%(asctime)s %(levelname)s [%(name)s] [rid=%(request_id)s] %(message)s',
        },
    },
    'handlers': {
        'console': {
            'class': 'logging.StreamHandler',
            'formatter': 'standard',
            'filters': ['request_id'],
        },
    },
    'root': {
        'handlers': ['console'],
        'level': LOG_LEVEL,
    },
    'loggers': {
        'django.db.backends': {
            'level': 'WARNING',
        },
        'audit': {
            'handlers': ['console'],
            'level': 'INFO',
            'propagate': False,
        },
    },
}

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

REDIS_URL = (os.getenv('REDIS_URL', '') or os.getenv('CACHE_REDIS_URL', '')).strip()
if REDIS_URL:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.redis.RedisCache',
            'LOCATION': REDIS_URL,
            'TIMEOUT': int(os.getenv('CACHE_DEFAULT_TIMEOUT', '300')),
        }
    }
else:
    CACHES = {
        'default': {
            'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
            'LOCATION': 'lease-backend',
        }
    }

# Celery Configuration
CELERY_BROKER_URL = os.getenv('CELERY_BROKER_URL', 'redis://localhost:6379/0')
CELERY_RESULT_BACKEND = os.getenv('CELERY_RESULT_BACKEND', 'redis://localhost:6379/0')
CELERY_ACCEPT_CONTENT = ['json']
CELERY_TASK_SERIALIZER = 'json'
CELERY_RESULT_SERIALIZER = 'json'
CELERY_TIMEZONE = 'UTC'
CELERY_TASK_TRACK_STARTED = True
CELERY_TASK_TIME_LIMIT = 10 * 60
CELERY_TASK_SOFT_TIME_LIMIT = 8 * 60
# Run export tasks inline (no broker) for local development and tests.
CELERY_TASK_ALWAYS_EAGER = _env_flag('CELERY_TASK_ALWAYS_EAGER', 'True')
CELERY_TASK_EAGER_PROPAGATES = True

# Periodic signature polling (celery beat); callbacks remain the primary path.
CELERY_BEAT_SCHEDULE = {
    'refresh-open-signatures': {
        'task': 'contracts.refresh_open_signatures',
        'schedule': int(os.getenv('ESIGN_REFRESH_INTERVAL_SECONDS') or '300'),
    },
}
