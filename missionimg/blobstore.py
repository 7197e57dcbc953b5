import dataclasses
from typing import Any, Optional, Protocol
from urllib import parse

import boto3
from botocore.exceptions import ClientError
from mypy_boto3_s3.client import S3Client

from missionimg.config import Config, StoreName
from missionimg.typing import BlobKey

ORIGINAL_NAME_METADATA = 'original-name'
FALLBACK_CONTENT_TYPE = 'application/octet-stream'


@dataclasses.dataclass(frozen=True)
class StoredObject:
  data: bytes
  content_type: str
  original_name: Optional[str] = None


@dataclasses.dataclass(frozen=True)
class LargeObject:
  """Object left unread because it is larger than the caller asked for."""
  size: int
  content_type: str


@dataclasses.dataclass(frozen=True)
class PresignedPost:
  url: str
  fields: dict[str, str]


class BlobStore(Protocol):
  name: StoreName

  def get_with_metadata(
      self,
      key: BlobKey,
      max_size: Optional[int] = None,
  ) -> Optional[StoredObject | LargeObject]:
    ...

  def set(
      self,
      key: BlobKey,
      data: bytes,
      content_type: str,
      original_name: Optional[str] = None,
  ) -> None:
    ...

  def presigned_url(self, key: BlobKey, expires_in: int) -> str:
    ...

  def presigned_post(
      self,
      key: BlobKey,
      content_type: str,
      max_size: int,
      original_name: str,
      expires_in: int,
  ) -> PresignedPost:
    ...


def is_not_found_client_error(exception: ClientError) -> bool:
  if 'Error' not in exception.response:
    return False
  if 'Code' not in exception.response['Error']:
    return False
  return exception.response['Error']['Code'] in ['404', 'NoSuchKey']


class S3BlobStore:
  """Logical blob store backed by one S3 bucket.

  The content type lives in the object's ``ContentType``. The original file
  name is kept as percent-encoded user metadata, since S3 only accepts ASCII
  there.
  """

  def __init__(self, name: StoreName, s3: S3Client, bucket: str):
    self.name = name
    self.s3 = s3
    self.bucket = bucket

  @classmethod
  def from_config(cls, name: StoreName, s3: S3Client, config: Config) -> 'S3BlobStore':
    return cls(name, s3, config.bucket_for(name))

  def get_with_metadata(
      self,
      key: BlobKey,
      max_size: Optional[int] = None,
  ) -> Optional[StoredObject | LargeObject]:
    try:
      res = self.s3.get_object(Bucket=self.bucket, Key=key)
    except ClientError as e:
      if is_not_found_client_error(e):
        return None
      raise e

    content_type = res.get('ContentType', FALLBACK_CONTENT_TYPE)
    size = res.get('ContentLength', 0)
    if max_size is not None and max_size < size:
      res['Body'].close()
      return LargeObject(size=size, content_type=content_type)

    data = res['Body'].read()
    original_name = res.get('Metadata', {}).get(ORIGINAL_NAME_METADATA)

    return StoredObject(
        data=data,
        content_type=content_type,
        original_name=None if original_name is None else parse.unquote(original_name))

  def set(
      self,
      key: BlobKey,
      data: bytes,
      content_type: str,
      original_name: Optional[str] = None,
  ) -> None:
    metadata = {}
    if original_name is not None:
      metadata[ORIGINAL_NAME_METADATA] = parse.quote(original_name)

    self.s3.put_object(
        Body=data,
        Bucket=self.bucket,
        ContentType=content_type,
        Key=key,
        Metadata=metadata,
    )

  def presigned_url(self, key: BlobKey, expires_in: int) -> str:
    return self.s3.generate_presigned_url(
        'get_object',
        Params={
            'Bucket': self.bucket,
            'Key': key,
        },
        ExpiresIn=expires_in)

  def presigned_post(
      self,
      key: BlobKey,
      content_type: str,
      max_size: int,
      original_name: str,
      expires_in: int,
  ) -> PresignedPost:
    """Presign a browser form POST that writes ``key`` directly.

    S3 enforces the content type, the original name metadata and the size
    range, so the object lands exactly as ``set`` would have stored it.
    """
    fields = {
        'Content-Type': content_type,
        f'x-amz-meta-{ORIGINAL_NAME_METADATA}': parse.quote(original_name),
    }
    conditions: list[Any] = [{k: v} for k, v in fields.items()]
    conditions.append(['content-length-range', 1, max_size])

    post = self.s3.generate_presigned_post(
        Bucket=self.bucket,
        Key=key,
        Fields=fields,
        Conditions=conditions,
        ExpiresIn=expires_in)

    return PresignedPost(url=post['url'], fields=post['fields'])


def new_s3_client(config: Config) -> S3Client:
  return boto3.client('s3', region_name=config.region)
