# core/aws_client.py
"""
Centralized AWS client factory to ensure proper credential handling.
This module creates AWS clients with explicit credential and timeout
configuration. Retries are disabled at the botocore level because the
pipeline applies its own bounded backoff at the point of failure.
"""
import boto3
from botocore.config import Config
from core.config import settings
from core.logger import logger
import os


def _credentials():
    # Get credentials from settings (which loads from .env) or environment
    return {
        "aws_access_key_id": getattr(settings, 'AWS_ACCESS_KEY_ID', None) or os.getenv('AWS_ACCESS_KEY_ID'),
        "aws_secret_access_key": getattr(settings, 'AWS_SECRET_ACCESS_KEY', None) or os.getenv('AWS_SECRET_ACCESS_KEY'),
        "aws_session_token": getattr(settings, 'AWS_SESSION_TOKEN', None) or os.getenv('AWS_SESSION_TOKEN'),
    }


def get_s3_client():
    """Get S3 client with proper credentials and explicit timeouts."""
    try:
        config = Config(
            connect_timeout=settings.S3_CONNECT_TIMEOUT_SECS,
            read_timeout=settings.S3_READ_TIMEOUT_SECS,
            retries={'max_attempts': 0}
        )
        client = boto3.client(
            "s3",
            region_name=settings.AWS_REGION,
            config=config,
            **_credentials()
        )
        logger.info("S3 client initialized with credentials")
        return client
    except Exception as e:
        logger.error(f"Failed to initialize S3 client: {str(e)}")
        raise


def get_sqs_client():
    """Get SQS client with proper credentials and explicit timeouts."""
    try:
        config = Config(
            connect_timeout=settings.SQS_CONNECT_TIMEOUT_SECS,
            read_timeout=settings.SQS_READ_TIMEOUT_SECS,
            retries={'max_attempts': 0}
        )
        client = boto3.client(
            "sqs",
            region_name=settings.SQS_REGION,
            config=config,
            **_credentials()
        )
        logger.info("SQS client initialized with credentials")
        return client
    except Exception as e:
        logger.error(f"Failed to initialize SQS client: {str(e)}")
        raise


def validate_aws_credentials():
    """Validate that AWS credentials are properly configured."""
    creds = _credentials()

    if not creds["aws_access_key_id"] or not creds["aws_secret_access_key"]:
        logger.warning("Missing AWS credentials in both settings and environment variables")
        logger.info("AWS credentials not found. Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY in .env, "
                    "or rely on the instance/task role")
        return False

    logger.info("AWS credentials found and validated")
    return True
