import logging
from logging import Logger
from pathlib import Path
from typing import Callable, Optional

import pytest
from pyvips import Image  # type: ignore

from missionimg.blobstore import LargeObject, PresignedPost, StoredObject
from missionimg.config import StoreName
from missionimg.jsonlog import MyJsonFormatter
from missionimg.typing import BlobKey

LOADER_MAP = {
    'jpegload': 'image/jpeg',
    'jpegload_buffer': 'image/jpeg',
    'pngload': 'image/png',
    'pngload_buffer': 'image/png',
    'webpload': 'image/webp',
    'webpload_buffer': 'image/webp',
    'heifload': 'image/avif',
    'heifload_buffer': 'image/avif',
    'gifload': 'image/gif',
    'gifload_buffer': 'image/gif',
}


class MemoryBlobStore:

  def __init__(self, name: StoreName):
    self.name = name
    self.objects: dict[BlobKey, StoredObject] = {}
    self.reads: list[BlobKey] = []
    self.posts: list[tuple[BlobKey, str, int, str]] = []
    self.fail_reads = False
    self.fail_writes = False

  def get_with_metadata(
      self,
      key: BlobKey,
      max_size: Optional[int] = None,
  ) -> Optional[StoredObject | LargeObject]:
    self.reads.append(key)
    if self.fail_reads:
      raise RuntimeError(f'{self.name.value} unavailable')
    obj = self.objects.get(key)
    if obj is not None and max_size is not None and max_size < len(obj.data):
      return LargeObject(len(obj.data), obj.content_type)
    return obj

  def set(
      self,
      key: BlobKey,
      data: bytes,
      content_type: str,
      original_name: Optional[str] = None,
  ) -> None:
    if self.fail_writes:
      raise RuntimeError(f'{self.name.value} unavailable')
    self.objects[key] = StoredObject(data, content_type, original_name)

  def presigned_url(self, key: BlobKey, expires_in: int) -> str:
    return f'{self.url}{key}?expires={expires_in}'

  def presigned_post(
      self,
      key: BlobKey,
      content_type: str,
      max_size: int,
      original_name: str,
      expires_in: int,
  ) -> PresignedPost:
    self.posts.append((key, content_type, max_size, original_name))
    return PresignedPost(url=self.url, fields={'key': key, 'Content-Type': content_type})

  @property
  def url(self) -> str:
    return f'https://{self.name.value}.s3.example/'


def decode(data: bytes) -> Image:
  return Image.new_from_buffer(data, '')


def content_type_of(image: Image) -> str:
  return LOADER_MAP[image.get('vips-loader')]


@pytest.fixture
def logger(tmp_path: Path) -> Logger:
  log = logging.getLogger(f'{__name__}.{tmp_path.name}')

  log_file = open(tmp_path / 'test.log', 'w')

  log_handler = logging.StreamHandler()
  log_handler.setFormatter(MyJsonFormatter())
  log_handler.setLevel(logging.DEBUG)
  log_handler.setStream(log_file)
  log.addHandler(log_handler)
  log.setLevel(logging.DEBUG)

  return log


@pytest.fixture
def images_store() -> MemoryBlobStore:
  return MemoryBlobStore(StoreName.IMAGES)


@pytest.fixture
def cache_store() -> MemoryBlobStore:
  return MemoryBlobStore(StoreName.IMAGES_CACHE)


@pytest.fixture
def make_image() -> Callable[[int, int, str], bytes]:

  def fn(width: int, height: int, suffix: str = '.jpg', bands: int = 3) -> bytes:
    image = (Image.black(width, height, bands=bands) + 128).cast('uchar')
    return image.write_to_buffer(suffix)

  return fn
