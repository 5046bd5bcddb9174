import logging

import boto3
from botocore.exceptions import ClientError

from filmhub import config

logger = logging.getLogger(__name__)

# S3 client
s3_client = boto3.client(
    's3',
    aws_access_key_id=config.AWS_ACCESS_KEY_ID or None,
    aws_secret_access_key=config.AWS_SECRET_ACCESS_KEY or None,
    region_name=config.AWS_REGION
)

BUCKET_NAME = config.AWS_BUCKET_NAME


def object_url(key: str) -> str:
    return f"https://{BUCKET_NAME}.s3.{config.AWS_REGION}.amazonaws.com/{key}"


def upload_file_to_s3(file_content: bytes, filename: str, content_type: str) -> str:
    """
    Upload a film file to S3
    Returns: S3 URL
    """
    try:
        s3_client.put_object(
            Bucket=BUCKET_NAME,
            Key=filename,
            Body=file_content,
            ContentType=content_type or "application/octet-stream"
        )
        return object_url(filename)

    except ClientError as e:
        logger.error(f"S3 upload error: {e}")
        raise


def get_file_from_s3(filename: str, byte_range: str = None):
    """
    Fetch a film object from S3 (optionally a "bytes=start-end" range)
    """
    params = {"Bucket": BUCKET_NAME, "Key": filename}
    if byte_range:
        params["Range"] = byte_range
    try:
        return s3_client.get_object(**params)
    except ClientError as e:
        logger.error(f"S3 download error: {e}")
        raise


def delete_file_from_s3(filename: str):
    """
    Delete a film object from S3
    """
    try:
        s3_client.delete_object(
            Bucket=BUCKET_NAME,
            Key=filename
        )
    except ClientError as e:
        logger.error(f"S3 delete error: {e}")
        raise
