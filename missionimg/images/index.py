import base64
import dataclasses
import os
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from http import HTTPStatus
from logging import Logger
from typing import Any, Callable, Optional
from urllib import parse

from missionimg import engine
from missionimg.blobstore import BlobStore, LargeObject, S3BlobStore, StoredObject, new_s3_client
from missionimg.config import Config, StoreName
from missionimg.engine import Transformed
from missionimg.jsonlog import init_logging
from missionimg.options import TRANSFORMABLE_TYPES, AcceptHeader, TransformOptions
from missionimg.typing import BlobKey, FunctionUrlEvent, FunctionUrlResponse, HttpPath

CACHE_CONTROL_IMMUTABLE = 'public, max-age=31536000, immutable'
NOT_FOUND_BODY = b'Not found'
NOT_FOUND_CONTENT_TYPE = 'text/plain; charset=utf-8'

CACHE_WRITER_THREADS = 2

# Function URL payloads are capped at 6MB and bodies travel base64-encoded.
# Anything larger is served by a redirect to a presigned URL instead.
MAX_INLINE_BODY = 4 * 1024 * 1024
PRESIGNED_URL_EXPIRES = 3600
REDIRECT_MAX_AGE = 300

logger = init_logging(__name__)

Transformer = Callable[[bytes, str, TransformOptions], Transformed]


@dataclasses.dataclass(frozen=True)
class InstantResponse:
  status: int
  body: bytes
  content_type: str
  cache_control: str
  x_cache: Optional[str] = None
  vips_us: Optional[int] = None
  location: Optional[str] = None

  def to_lambda(self) -> FunctionUrlResponse:
    headers = {
        'Content-Type': self.content_type,
        'Cache-Control': self.cache_control,
        'Access-Control-Allow-Origin': '*',
    }
    if self.x_cache is not None:
      headers['X-Cache'] = self.x_cache
    if self.location is not None:
      headers['Location'] = self.location

    return {
        'statusCode': self.status,
        'headers': headers,
        'body': base64.b64encode(self.body).decode(),
        'isBase64Encoded': True,
    }


def not_found(error_max_age: int) -> InstantResponse:
  return InstantResponse(
      status=HTTPStatus.NOT_FOUND,
      body=NOT_FOUND_BODY,
      content_type=NOT_FOUND_CONTENT_TYPE,
      cache_control=f'public, max-age={error_max_age}')


def key_from_path(path: HttpPath, basedir: str) -> BlobKey:
  if basedir != '' and path.startswith(f'{basedir}/'):
    path = HttpPath(path[len(basedir):])
  return BlobKey(parse.unquote(path.lstrip('/')))


class ImgServer:
  instances: dict[Config, 'ImgServer'] = {}

  def __init__(
      self,
      log: Logger,
      images: BlobStore,
      cache: BlobStore,
      basedir: str,
      error_max_age: int,
      transformer: Transformer = engine.transform,
      executor: Optional[Executor] = None,
  ):
    self.log = log
    self.images = images
    self.cache = cache
    self.basedir = basedir
    self.error_max_age = error_max_age
    self.transformer = transformer
    self.executor = executor or ThreadPoolExecutor(
        max_workers=CACHE_WRITER_THREADS, thread_name_prefix='cache-writer')
    self.pending: set[Future[None]] = set()
    self.log_context = {'path': '', 'qstr': '', 'accept_header': ''}

  @classmethod
  def from_config(cls, log: Logger, config: Config) -> 'ImgServer':
    if config not in cls.instances:
      s3 = new_s3_client(config)
      cls.instances[config] = cls(
          log=log,
          images=S3BlobStore.from_config(StoreName.IMAGES, s3, config),
          cache=S3BlobStore.from_config(StoreName.IMAGES_CACHE, s3, config),
          basedir=config.basedir,
          error_max_age=config.error_max_age)

    return cls.instances[config]

  def log_warning(self, message: str, dict: dict[str, Any]) -> None:
    self.log.warning({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_debug(self, message: str, dict: dict[str, Any]) -> None:
    self.log.debug({
        'message': message,
        **self.log_context,
        **dict,
    })

  def log_error(self, message: str, dict: dict[str, Any]) -> None:
    self.log.error({
        'message': message,
        **self.log_context,
        **dict,
    })

  def respond(
      self,
      body: bytes,
      content_type: str,
      x_cache: Optional[str] = None,
      vips_us: Optional[int] = None,
  ) -> InstantResponse:
    return InstantResponse(
        status=HTTPStatus.OK,
        body=body,
        content_type=content_type,
        cache_control=CACHE_CONTROL_IMMUTABLE,
        x_cache=x_cache,
        vips_us=vips_us)

  def redirect(
      self,
      store: BlobStore,
      key: BlobKey,
      content_type: str,
      x_cache: Optional[str] = None,
  ) -> InstantResponse:
    # The presigned URL expires, so the redirect itself is cached briefly.
    return InstantResponse(
        status=HTTPStatus.FOUND,
        body=b'',
        content_type=content_type,
        cache_control=f'public, max-age={REDIRECT_MAX_AGE}',
        x_cache=x_cache,
        location=store.presigned_url(key, PRESIGNED_URL_EXPIRES))

  def get_cached(self, cache_key: BlobKey) -> Optional[InstantResponse]:
    try:
      cached = self.cache.get_with_metadata(cache_key, max_size=MAX_INLINE_BODY)
    except Exception as e:
      self.log_warning('failed to read cache', {'reason': str(e), 'cache_key': cache_key})
      return None

    if cached is None:
      return None

    if isinstance(cached, LargeObject):
      return self.redirect(self.cache, cache_key, cached.content_type, x_cache='HIT')

    return self.respond(cached.data, cached.content_type, x_cache='HIT')

  def write_cache(self, cache_key: BlobKey, result: Transformed) -> None:
    context = dict(self.log_context)

    def done(future: Future[None]) -> None:
      self.pending.discard(future)
      e = future.exception()
      if e is None:
        self.log.debug({'message': 'cached', **context, 'cache_key': cache_key})
      else:
        self.log.error({
            'message': 'failed to cache transformed image',
            **context,
            'cache_key': cache_key,
            'reason': str(e),
        })

    future = self.executor.submit(self.cache.set, cache_key, result.data, result.content_type)
    self.pending.add(future)
    future.add_done_callback(done)

  def flush(self) -> None:
    wait(list(self.pending))

  def serve(self, key: BlobKey, options: TransformOptions) -> InstantResponse:
    needs_transformation = options.needs_transformation()

    # The cache is consulted before the original, which may be large.
    cache_key = options.cache_key(key) if needs_transformation else None
    if cache_key is not None:
      hit = self.get_cached(cache_key)
      if hit is not None:
        return hit

    original = self.images.get_with_metadata(key, max_size=MAX_INLINE_BODY)
    if original is None:
      return not_found(self.error_max_age)

    if original.content_type not in TRANSFORMABLE_TYPES or cache_key is None:
      if isinstance(original, LargeObject):
        self.log_debug('redirected', {'key': key, 'size': original.size})
        return self.redirect(self.images, key, original.content_type)
      return self.respond(original.data, original.content_type)

    if isinstance(original, LargeObject):
      # Only the response body is capped; large sources are still transformed.
      original = self.images.get_with_metadata(key)
      if not isinstance(original, StoredObject):
        return not_found(self.error_max_age)

    start_ns = time.time_ns()
    result = self.transformer(original.data, original.content_type, options)
    vips_us = (time.time_ns() - start_ns) // 1000

    if MAX_INLINE_BODY < len(result.data):
      # The redirect target must exist before responding.
      self.cache.set(cache_key, result.data, result.content_type)
      return self.redirect(self.cache, cache_key, result.content_type, x_cache='MISS')

    self.write_cache(cache_key, result)

    return self.respond(result.data, result.content_type, x_cache='MISS', vips_us=vips_us)

  def process(
      self,
      path: HttpPath,
      qs: dict[str, list[str]],
      accept_header: AcceptHeader,
  ) -> InstantResponse:
    try:
      key = key_from_path(path, self.basedir)
      if key == '':
        return not_found(self.error_max_age)

      return self.serve(key, TransformOptions.from_query(qs, accept_header))
    except Exception as e:
      self.log_error('error during process()', {'reason': str(e)})
      return not_found(self.error_max_age)

  def set_log_context(self, path: HttpPath, qstr: str, accept_header: str) -> None:
    self.log_context = {'path': str(path), 'qstr': qstr, 'accept_header': accept_header}


def lambda_main(event: FunctionUrlEvent) -> FunctionUrlResponse:
  headers = event.get('headers', {})
  accept_header = headers.get('accept', '')
  path = event['rawPath']
  qstr = event.get('rawQueryString', '')

  config = Config.from_env(logger, os.environ)
  if config is None:
    return not_found(0).to_lambda()

  server = ImgServer.from_config(logger, config)
  server.set_log_context(path, qstr, accept_header)
  result = server.process(path, parse.parse_qs(qstr), AcceptHeader.from_str(accept_header))

  server.log_debug(
      'responded', {
          'status': result.status,
          'content_type': result.content_type,
          'x_cache': result.x_cache,
          'img_size': len(result.body),
          'vips_us': result.vips_us,
      })

  return result.to_lambda()
