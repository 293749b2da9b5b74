"""
Configuration module for Lambda handlers.
Loads all environment variables needed by the engagement backend.
"""
import os
from decimal import Decimal


class Config:
    """Centralized configuration from environment variables."""

    # AWS Region
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')

    # Logging
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # DynamoDB Tables
    ENGAGEMENTS_TABLE = os.environ.get('ENGAGEMENTS_TABLE', 'engagements')
    PAYMENTS_TABLE = os.environ.get('PAYMENTS_TABLE', 'escrow-payments')
    SUBMISSIONS_TABLE = os.environ.get('SUBMISSIONS_TABLE', 'submissions')
    CHANNELS_TABLE = os.environ.get('CHANNELS_TABLE', 'channels')
    SUBSCRIPTIONS_TABLE = os.environ.get('SUBSCRIPTIONS_TABLE', 'subscriptions')

    # Secondary indexes
    GIG_INDEX = os.environ.get('GIG_INDEX', 'gigId-index')
    ORDER_REF_INDEX = os.environ.get('ORDER_REF_INDEX', 'gatewayOrderRef-index')
    ENGAGEMENT_INDEX = os.environ.get('ENGAGEMENT_INDEX', 'engagementId-index')
    PAYMENT_STATUS_INDEX = os.environ.get('PAYMENT_STATUS_INDEX', 'status-index')

    # Set to "memory" to run against the in-process store (local runs)
    STORE_BACKEND = os.environ.get('STORE_BACKEND', 'dynamodb')

    # SQS Queues
    NOTIFICATIONS_QUEUE_URL = os.environ.get('NOTIFICATIONS_QUEUE_URL', '')

    # S3 Buckets
    DELIVERABLES_BUCKET = os.environ.get('DELIVERABLES_BUCKET', '')
    PRESIGNED_URL_EXPIRATION = int(os.environ.get('PRESIGNED_URL_EXPIRATION', '3600'))

    # Payment gateway
    GATEWAY_BASE_URL = os.environ.get('GATEWAY_BASE_URL', 'https://api.razorpay.com/v1')
    GATEWAY_KEY_ID = os.environ.get('GATEWAY_KEY_ID', '')
    GATEWAY_KEY_SECRET = os.environ.get('GATEWAY_KEY_SECRET', '')
    GATEWAY_WEBHOOK_SECRET = os.environ.get('GATEWAY_WEBHOOK_SECRET', '')
    GATEWAY_TIMEOUT_SECONDS = float(os.environ.get('GATEWAY_TIMEOUT_SECONDS', '10'))
    GATEWAY_CURRENCY = os.environ.get('GATEWAY_CURRENCY', 'INR')

    # Escrow pricing
    PLATFORM_FEE_PERCENT = Decimal(os.environ.get('PLATFORM_FEE_PERCENT', '0.05'))
    RECONCILE_AFTER_MINUTES = int(os.environ.get('RECONCILE_AFTER_MINUTES', '15'))

    # Iterations
    DEFAULT_TOTAL_ITERATIONS = int(os.environ.get('DEFAULT_TOTAL_ITERATIONS', '3'))

    # Channel auto-close
    AUTO_CLOSE_DELAY_HOURS = int(os.environ.get('AUTO_CLOSE_DELAY_HOURS', '336'))  # 14 days
    CLOSE_WARNING_MINUTES = int(os.environ.get('CLOSE_WARNING_MINUTES', '60'))


config = Config()
