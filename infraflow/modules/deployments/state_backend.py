import logging
from typing import Optional

import boto3
from botocore.exceptions import ClientError

from infraflow.config import Settings

logger = logging.getLogger(__name__)


class S3StateBackend:
    """Remote Terraform state in S3, one state object per deployment id."""

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        aws_access_key_id: Optional[str] = None,
        aws_secret_access_key: Optional[str] = None,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.s3_client = client or boto3.client(
            's3',
            aws_access_key_id=aws_access_key_id,
            aws_secret_access_key=aws_secret_access_key,
            region_name=region
        )
        self._bucket_checked = False

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["S3StateBackend"]:
        if not settings.state_bucket_name:
            return None
        return cls(
            bucket=settings.state_bucket_name,
            region=settings.aws_region,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )

    @staticmethod
    def state_key(deployment_id: str) -> str:
        return f"terraform-state/deployments/{deployment_id}/terraform.tfstate"

    def backend_block(self, deployment_id: str) -> str:
        return f"""terraform {{
  backend "s3" {{
    bucket  = "{self.bucket}"
    key     = "{self.state_key(deployment_id)}"
    region  = "{self.region}"
    encrypt = true
  }}
}}
"""

    def ensure_bucket(self):
        """Ensure S3 bucket exists, create if it doesn't"""
        if self._bucket_checked:
            return
        try:
            self.s3_client.head_bucket(Bucket=self.bucket)
            logger.info(f"S3 bucket {self.bucket} exists")
        except ClientError:
            try:
                if self.region == 'us-east-1':
                    self.s3_client.create_bucket(Bucket=self.bucket)
                else:
                    self.s3_client.create_bucket(
                        Bucket=self.bucket,
                        CreateBucketConfiguration={'LocationConstraint': self.region}
                    )
                logger.info(f"Created S3 bucket {self.bucket}")
            except ClientError as e:
                logger.error(f"Failed to create S3 bucket: {str(e)}")
                raise
        self._bucket_checked = True

    def state_exists(self, deployment_id: str) -> bool:
        """Check if the Terraform state object exists in S3"""
        try:
            self.s3_client.head_object(Bucket=self.bucket, Key=self.state_key(deployment_id))
            return True
        except ClientError as e:
            if e.response['Error']['Code'] in ('404', 'NoSuchKey', 'NotFound'):
                return False
            logger.warning(f"Error checking state file existence: {str(e)}")
            return False
