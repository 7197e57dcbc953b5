import base64
import dataclasses
import json
import os
import secrets
import time
from http import HTTPStatus
from logging import Logger
from pathlib import PurePosixPath
from typing import Any, Callable, Optional

from pyvips import Error as VipsError  # type: ignore

from missionimg import engine
from missionimg.blobstore import (
    BlobStore,
    PresignedPost,
    S3BlobStore,
    StoredObject,
    new_s3_client
)
from missionimg.config import Config, StoreName
from missionimg.engine import Transformed
from missionimg.jsonlog import init_logging
from missionimg.typing import BlobKey, FunctionUrlEvent, FunctionUrlResponse
from missionimg.upload.form import InvalidForm, parse_form

MIB = 1024 * 1024

IMAGE_TYPES = frozenset(['image/jpeg', 'image/png', 'image/gif', 'image/webp'])
VIDEO_TYPES = frozenset(['video/mp4', 'video/webm', 'video/quicktime', 'video/x-m4v'])

MAX_IMAGE_SIZE = 5 * MIB
MAX_VIDEO_SIZE = 100 * MIB

# Animated GIFs are kept as they are.
PRESERVED_IMAGE_TYPES = frozenset(['image/gif'])

FALLBACK_IMAGE_EXTENSION = 'jpg'
FALLBACK_VIDEO_EXTENSION = 'mp4'
UPLOAD_KEY_PREFIX = 'uploads/'
# Images posted straight to the store wait here until they are normalized.
STAGING_KEY_PREFIX = 'incoming/'

PRESIGNED_POST_EXPIRES = 900

FORM_FIELD = 'file'

CORS_HEADERS = {
    'Access-Control-Allow-Origin': '*',
    'Access-Control-Allow-Methods': 'POST, OPTIONS',
    'Access-Control-Allow-Headers': 'Content-Type',
}

logger = init_logging(__name__)

Normalizer = Callable[[bytes, str], Transformed]


class UploadRejected(Exception):
  pass


@dataclasses.dataclass(frozen=True)
class UploadedFile:
  data: bytes
  mime_type: str
  filename: str

  @property
  def size(self) -> int:
    return len(self.data)

  @property
  def is_video(self) -> bool:
    return self.mime_type in VIDEO_TYPES


@dataclasses.dataclass(frozen=True)
class UploadRequest:
  """A file the client is about to post directly to the store."""
  filename: str
  mime_type: str
  size: int

  @property
  def is_video(self) -> bool:
    return self.mime_type in VIDEO_TYPES

  @classmethod
  def maybe_from_json(cls, obj: dict[str, Any]) -> Optional['UploadRequest']:
    filename = obj.get('filename')
    mime_type = obj.get('contentType')
    size = obj.get('size')
    if not isinstance(filename, str) or not isinstance(mime_type, str):
      return None
    if not isinstance(size, int) or isinstance(size, bool):
      return None
    return cls(filename=filename, mime_type=mime_type.split(';')[0].strip().lower(), size=size)


@dataclasses.dataclass(frozen=True)
class StoredUpload:
  key: BlobKey
  url: str


@dataclasses.dataclass(frozen=True)
class UploadTicket:
  key: BlobKey
  post: PresignedPost
  # Staged uploads must be completed before they are served.
  staged: bool
  url: Optional[str] = None


def json_dump(obj: Any) -> str:
  return json.dumps(obj, separators=(',', ':'), sort_keys=True)


def extension_from_filename(filename: str, fallback: str) -> str:
  suffix = PurePosixPath(filename).suffix
  return suffix[1:].lower() if len(suffix) > 1 else fallback


def generate_key(extension: str, prefix: str = UPLOAD_KEY_PREFIX) -> BlobKey:
  timestamp = time.time_ns() // 1_000_000
  return BlobKey(f'{prefix}{timestamp}-{secrets.token_hex(4)}.{extension}')


class Uploader:
  instances: dict[Config, 'Uploader'] = {}

  def __init__(
      self,
      log: Logger,
      images: BlobStore,
      basedir: str,
      normalizer: Normalizer = engine.normalize_upload,
  ):
    self.log = log
    self.images = images
    self.basedir = basedir
    self.normalizer = normalizer

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'Uploader':
    if config not in cls.instances:
      cls.instances[config] = cls(
          log=log,
          images=S3BlobStore.from_config(StoreName.IMAGES, new_s3_client(config), config),
          basedir=config.basedir)

    return cls.instances[config]

  def validate(self, mime_type: str, size: int) -> None:
    if mime_type not in IMAGE_TYPES and mime_type not in VIDEO_TYPES:
      raise UploadRejected('Invalid file type. Allowed: JPEG, PNG, GIF, WebP, MP4, WebM, MOV')

    if mime_type in VIDEO_TYPES:
      if MAX_VIDEO_SIZE < size:
        raise UploadRejected('File too large. Maximum size is 100MB for videos')
    elif MAX_IMAGE_SIZE < size:
      raise UploadRejected('File too large. Maximum size is 5MB for images')

  def prepare(self, file: UploadedFile) -> tuple[bytes, str, str]:
    """Return the bytes, content type and extension to store for ``file``."""
    if file.is_video:
      return (
          file.data, file.mime_type,
          extension_from_filename(file.filename, FALLBACK_VIDEO_EXTENSION))

    if file.mime_type in PRESERVED_IMAGE_TYPES:
      return (
          file.data, file.mime_type,
          extension_from_filename(file.filename, FALLBACK_IMAGE_EXTENSION))

    try:
      normalized = self.normalizer(file.data, file.mime_type)
    except VipsError as e:
      self.log.warning({'message': 'failed to normalize upload', 'reason': str(e)})
      raise UploadRejected('Invalid image file') from e

    return normalized.data, normalized.content_type, 'webp'

  def ingest(self, file: UploadedFile) -> StoredUpload:
    self.validate(file.mime_type, file.size)

    data, content_type, extension = self.prepare(file)
    key = generate_key(extension)

    self.images.set(key, data, content_type, original_name=file.filename)
    self.log.debug({
        'message': 'stored',
        'key': key,
        'content_type': content_type,
        'original_size': file.size,
        'stored_size': len(data),
    })

    return StoredUpload(key=key, url=f'{self.basedir}/{key}')

  def reserve(self, request: UploadRequest) -> UploadTicket:
    """Validate a declared file and presign a direct POST for it.

    Videos and GIFs are stored as they are, so they go straight to their
    final key. Other images go to the staging prefix and are normalized by
    ``complete``.
    """
    self.validate(request.mime_type, request.size)

    if request.is_video:
      key = generate_key(extension_from_filename(request.filename, FALLBACK_VIDEO_EXTENSION))
      staged = False
    elif request.mime_type in PRESERVED_IMAGE_TYPES:
      key = generate_key(extension_from_filename(request.filename, FALLBACK_IMAGE_EXTENSION))
      staged = False
    else:
      key = generate_key(
          extension_from_filename(request.filename, FALLBACK_IMAGE_EXTENSION), STAGING_KEY_PREFIX)
      staged = True

    post = self.images.presigned_post(
        key,
        request.mime_type,
        MAX_VIDEO_SIZE if request.is_video else MAX_IMAGE_SIZE,
        request.filename,
        PRESIGNED_POST_EXPIRES)
    self.log.debug({
        'message': 'reserved',
        'key': key,
        'content_type': request.mime_type,
        'declared_size': request.size,
    })

    return UploadTicket(
        key=key, post=post, staged=staged, url=None if staged else f'{self.basedir}/{key}')

  def complete(self, staged_key: BlobKey) -> StoredUpload:
    if not staged_key.startswith(STAGING_KEY_PREFIX):
      raise UploadRejected('Invalid upload key')

    staged = self.images.get_with_metadata(staged_key)
    if not isinstance(staged, StoredObject):
      raise UploadRejected('Upload not found')

    filename = staged.original_name or PurePosixPath(staged_key).name
    return self.ingest(UploadedFile(staged.data, staged.content_type, filename))


def json_response(status: int, body: dict[str, Any]) -> FunctionUrlResponse:
  return {
      'statusCode': status,
      'headers': {
          'Content-Type': 'application/json',
          **CORS_HEADERS,
      },
      'body': json_dump(body),
  }


def read_body(event: FunctionUrlEvent) -> bytes:
  body = event.get('body', '')
  if event.get('isBase64Encoded', False):
    return base64.b64decode(body)
  return body.encode('utf-8')


def read_file(event: FunctionUrlEvent) -> Optional[UploadedFile]:
  headers = event.get('headers', {})
  try:
    parts = parse_form(headers.get('content-type', ''), read_body(event))
  except InvalidForm as e:
    logger.warning({'message': 'invalid form', 'reason': str(e)})
    return None

  part = parts.get(FORM_FIELD)
  if part is None or part.filename is None:
    return None

  mime_type = part.content_type.split(';')[0].strip().lower()
  return UploadedFile(data=part.data, mime_type=mime_type, filename=part.filename)


def read_json(event: FunctionUrlEvent) -> Optional[dict[str, Any]]:
  try:
    obj = json.loads(read_body(event))
  except ValueError as e:
    logger.warning({'message': 'invalid json', 'reason': str(e)})
    return None
  return obj if isinstance(obj, dict) else None


def is_json(event: FunctionUrlEvent) -> bool:
  content_type = event.get('headers', {}).get('content-type', '')
  return content_type.split(';')[0].strip().lower() == 'application/json'


def direct_upload_main(event: FunctionUrlEvent) -> FunctionUrlResponse:
  """Handle ``{"filename", "contentType", "size"}`` and ``{"staged"}`` requests.

  The first presigns a POST for a file too large to travel through the
  function. The second normalizes a staged image once it has been posted.
  """
  req = read_json(event)
  if req is None:
    return json_response(HTTPStatus.BAD_REQUEST, {'error': 'Invalid upload request'})

  staged_key = req.get('staged')
  upload_request = UploadRequest.maybe_from_json(req)
  if not isinstance(staged_key, str) and upload_request is None:
    return json_response(HTTPStatus.BAD_REQUEST, {'error': 'Invalid upload request'})

  config = Config.from_env(logger, os.environ)
  if config is None:
    return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Failed to upload file'})

  uploader = Uploader.from_config(logger, config)

  try:
    if isinstance(staged_key, str):
      stored = uploader.complete(BlobKey(staged_key))
      return json_response(
          HTTPStatus.CREATED, {'success': True, 'url': stored.url, 'key': stored.key})

    assert upload_request is not None
    ticket = uploader.reserve(upload_request)
  except UploadRejected as e:
    return json_response(HTTPStatus.BAD_REQUEST, {'error': str(e)})
  except Exception as e:
    logger.error({'message': 'upload failed', 'reason': str(e)})
    return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Failed to upload file'})

  body: dict[str, Any] = {
      'key': ticket.key,
      'staged': ticket.staged,
      'upload': {
          'url': ticket.post.url,
          'fields': ticket.post.fields,
      },
  }
  if ticket.url is not None:
    body['url'] = ticket.url

  return json_response(HTTPStatus.OK, body)


def lambda_main(event: FunctionUrlEvent) -> FunctionUrlResponse:
  method = event['requestContext']['http']['method']

  if method == 'OPTIONS':
    return {'statusCode': HTTPStatus.NO_CONTENT, 'headers': dict(CORS_HEADERS)}

  if method != 'POST':
    return json_response(HTTPStatus.METHOD_NOT_ALLOWED, {'error': 'Method not allowed'})

  if is_json(event):
    return direct_upload_main(event)

  file = read_file(event)
  if file is None:
    return json_response(HTTPStatus.BAD_REQUEST, {'error': 'No file provided'})

  config = Config.from_env(logger, os.environ)
  if config is None:
    return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Failed to upload file'})

  uploader = Uploader.from_config(logger, config)

  try:
    stored = uploader.ingest(file)
  except UploadRejected as e:
    return json_response(HTTPStatus.BAD_REQUEST, {'error': str(e)})
  except Exception as e:
    logger.error({'message': 'upload failed', 'reason': str(e), 'filename': file.filename})
    return json_response(HTTPStatus.INTERNAL_SERVER_ERROR, {'error': 'Failed to upload file'})

  return json_response(HTTPStatus.CREATED, {'success': True, 'url': stored.url, 'key': stored.key})
