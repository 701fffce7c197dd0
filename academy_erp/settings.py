"""
Django settings for academy_erp project.

Scope:
- Family/student roster (read by the fee core)
- Fee ledger: admission and monthly billing, partial payments, on-hold verification
- Payment processor reconciliation (direct-debit mandates and payment webhooks)
- Fee reminders and attendance alerts over email
"""
import os
from datetime import date
from decimal import Decimal
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent.parent


DEBUG = os.getenv('DJANGO_DEBUG', 'False').lower() in {'1', 'true', 'yes'}
SECRET_KEY = os.getenv(
    'DJANGO_SECRET_KEY',
    'change-this-secret-key-in-production-8b1d2f0c5e7a4d9c9a3e6f41b2c7d0e5',
)
ALLOWED_HOSTS = [
    host.strip()
    for host in os.getenv('DJANGO_ALLOWED_HOSTS', 'localhost,127.0.0.1').split(',')
    if host.strip()
]


INSTALLED_APPS = [
    'django.contrib.admin',
    'django.contrib.auth',
    'django.contrib.contenttypes',
    'django.contrib.sessions',
    'django.contrib.messages',
    'django.contrib.staticfiles',
    'apps.core.users.apps.UsersConfig',
    'apps.core.students.apps.StudentsConfig',
    'apps.core.fees.apps.FeesConfig',
    'apps.core.payments.apps.PaymentsConfig',
    'apps.core.attendance.apps.AttendanceConfig',
    'apps.operations.communication.apps.CommunicationConfig',
]


MIDDLEWARE = [
    'django.middleware.security.SecurityMiddleware',
    'django.contrib.sessions.middleware.SessionMiddleware',
    'django.middleware.common.CommonMiddleware',
    'django.middleware.csrf.CsrfViewMiddleware',
    'django.contrib.auth.middleware.AuthenticationMiddleware',
    'django.contrib.messages.middleware.MessageMiddleware',
    'django.middleware.clickjacking.XFrameOptionsMiddleware',
]


ROOT_URLCONF = 'academy_erp.urls'

TEMPLATES = [
    {
        'BACKEND': 'django.template.backends.django.DjangoTemplates',
        'DIRS': [],
        'APP_DIRS': True,
        'OPTIONS': {
            'context_processors': [
                'django.template.context_processors.request',
                'django.contrib.auth.context_processors.auth',
                'django.contrib.messages.context_processors.messages',
            ],
        },
    },
]

WSGI_APPLICATION = 'academy_erp.wsgi.application'


DATABASES = {
    'default': {
        'ENGINE': os.getenv('DJANGO_DB_ENGINE', 'django.db.backends.sqlite3'),
        'NAME': os.getenv('DJANGO_DB_NAME', str(BASE_DIR / 'db.sqlite3')),
        'USER': os.getenv('DJANGO_DB_USER', ''),
        'PASSWORD': os.getenv('DJANGO_DB_PASSWORD', ''),
        'HOST': os.getenv('DJANGO_DB_HOST', ''),
        'PORT': os.getenv('DJANGO_DB_PORT', ''),
    }
}

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'


AUTH_PASSWORD_VALIDATORS = [
    {
        'NAME': 'django.contrib.auth.password_validation.UserAttributeSimilarityValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.MinimumLengthValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.CommonPasswordValidator',
    },
    {
        'NAME': 'django.contrib.auth.password_validation.NumericPasswordValidator',
    },
]


LANGUAGE_CODE = 'en-gb'
TIME_ZONE = 'Europe/London'
USE_I18N = True
USE_TZ = True


STATIC_URL = 'static/'
AUTH_USER_MODEL = 'users.User'


CSRF_COOKIE_SECURE = not DEBUG
SESSION_COOKIE_SECURE = not DEBUG
SECURE_SSL_REDIRECT = os.getenv('DJANGO_SECURE_SSL_REDIRECT', 'False').lower() in {'1', 'true', 'yes'}
SECURE_HSTS_SECONDS = int(os.getenv('DJANGO_SECURE_HSTS_SECONDS', '0'))
SECURE_PROXY_SSL_HEADER = ('HTTP_X_FORWARDED_PROTO', 'https')


LOGIN_URL = '/admin/login/'

TEST_RUNNER = 'apps.core.test_runner.InstalledAppsOnlyDiscoverRunner'


# Email
EMAIL_BACKEND = os.getenv(
    'DJANGO_EMAIL_BACKEND',
    'django.core.mail.backends.console.EmailBackend' if DEBUG else 'django.core.mail.backends.smtp.EmailBackend',
)
EMAIL_HOST = os.getenv('EMAIL_HOST', 'localhost')
EMAIL_PORT = int(os.getenv('EMAIL_PORT', '587'))
EMAIL_HOST_USER = os.getenv('EMAIL_HOST_USER', '')
EMAIL_HOST_PASSWORD = os.getenv('EMAIL_HOST_PASSWORD', '')
EMAIL_USE_TLS = os.getenv('EMAIL_USE_TLS', 'True').lower() in {'1', 'true', 'yes'}
EMAIL_TIMEOUT = int(os.getenv('EMAIL_TIMEOUT', '10'))
DEFAULT_FROM_EMAIL = os.getenv('DEFAULT_FROM_EMAIL', 'Academy <no-reply@academy.local>')
PARENT_PORTAL_URL = os.getenv('PARENT_PORTAL_URL', 'http://localhost:8000/')
NOTIFICATIONS_EMAIL_ENABLED = os.getenv('NOTIFICATIONS_EMAIL_ENABLED', 'True').lower() in {'1', 'true', 'yes'}


# Fee ledger
FEES_ADMISSION_FEE = Decimal(os.getenv('FEES_ADMISSION_FEE', '20.00'))
FEES_DEFAULT_MONTHLY_FEE = Decimal(os.getenv('FEES_DEFAULT_MONTHLY_FEE', '50.00'))
FEES_BILLING_CUTOVER_DATE = date.fromisoformat(os.getenv('FEES_BILLING_CUTOVER_DATE', '2025-09-01'))
FEES_CURRENCY = os.getenv('FEES_CURRENCY', 'gbp')
FEES_RECORD_RETRY_ATTEMPTS = 3


# Payment processor
PAYMENT_PROCESSOR_API_KEY = os.getenv('PAYMENT_PROCESSOR_API_KEY', '')
PAYMENT_PROCESSOR_API_BASE = os.getenv('PAYMENT_PROCESSOR_API_BASE', 'https://api.stripe.com/v1')
PAYMENT_PROCESSOR_WEBHOOK_SECRET = os.getenv('PAYMENT_PROCESSOR_WEBHOOK_SECRET', '')
PAYMENT_PROCESSOR_TIMEOUT_SECONDS = int(os.getenv('PAYMENT_PROCESSOR_TIMEOUT_SECONDS', '15'))
PAYMENT_WEBHOOK_TOLERANCE_SECONDS = 300


# Attendance alerts: consecutive marks before the first and second email
ATTENDANCE_ALERT_THRESHOLDS = {
    'weekdays': {'first': 3, 'second': 5},
    'weekend': {'first': 2, 'second': 4},
}


LOGGING = {
    'version': 1,
    'disable_existing_loggers': False,
    'formatters': {
        'verbose': {
            'format': '{asctime} {levelname} {name} {message}',
            'style': '{',
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
        'level': os.getenv('DJANGO_LOG_LEVEL', 'INFO'),
    },
    'loggers': {
        'django': {
            'handlers': ['console'],
            'level': 'WARNING',
            'propagate': False,
        },
        'apps': {
            'handlers': ['console'],
            'level': os.getenv('APPS_LOG_LEVEL', 'INFO'),
            'propagate': False,
        },
    },
}
