import base64
import io
import json
from typing import Generator

import boto3
import pytest
from botocore.exceptions import ClientError
from botocore.response import StreamingBody
from botocore.stub import Stubber

from missionimg.blobstore import LargeObject, S3BlobStore, StoredObject
from missionimg.config import Config, StoreName
from missionimg.typing import BlobKey

CONFIG = Config(region='us-east-1', images_bucket='mission-images', cache_bucket='mission-cache')

KEY = BlobKey('uploads/1700000000000-0a1b2c3d.jpg')


@pytest.fixture
def s3() -> Generator:
  client = boto3.client(
      's3',
      region_name=CONFIG.region,
      aws_access_key_id='testing',
      aws_secret_access_key='testing')
  yield client


@pytest.fixture
def stubber(s3) -> Generator[Stubber, None, None]:
  with Stubber(s3) as stubber:
    yield stubber
    stubber.assert_no_pending_responses()


def body(data: bytes) -> StreamingBody:
  return StreamingBody(io.BytesIO(data), len(data))


@pytest.mark.parametrize(
    'name,bucket', [
        (StoreName.IMAGES, 'mission-images'),
        (StoreName.IMAGES_CACHE, 'mission-cache'),
    ])
def test_from_config(s3, name: StoreName, bucket: str) -> None:
  store = S3BlobStore.from_config(name, s3, CONFIG)
  assert store.name == name
  assert store.bucket == bucket


def test_get_with_metadata(s3, stubber: Stubber) -> None:
  stubber.add_response(
      'get_object', {
          'Body': body(b'jpeg bytes'),
          'ContentType': 'image/jpeg',
          'Metadata': {
              'original-name': 'Robot%20danseur%20%C3%A9t%C3%A9.jpg',
          },
      }, {
          'Bucket': 'mission-images',
          'Key': KEY,
      })
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  assert store.get_with_metadata(KEY) == StoredObject(
      data=b'jpeg bytes', content_type='image/jpeg', original_name='Robot danseur été.jpg')


def test_get_without_metadata(s3, stubber: Stubber) -> None:
  stubber.add_response('get_object', {'Body': body(b'webp'), 'ContentType': 'image/webp'})
  store = S3BlobStore.from_config(StoreName.IMAGES_CACHE, s3, CONFIG)

  assert store.get_with_metadata(KEY) == StoredObject(b'webp', 'image/webp', None)


@pytest.mark.parametrize('code', ['NoSuchKey', '404'])
def test_get_missing(s3, stubber: Stubber, code: str) -> None:
  stubber.add_client_error('get_object', service_error_code=code, http_status_code=404)
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  assert store.get_with_metadata(KEY) is None


def test_get_error_propagates(s3, stubber: Stubber) -> None:
  stubber.add_client_error('get_object', service_error_code='AccessDenied', http_status_code=403)
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  with pytest.raises(ClientError):
    store.get_with_metadata(KEY)


def test_set(s3, stubber: Stubber) -> None:
  stubber.add_response(
      'put_object', {}, {
          'Body': b'webp bytes',
          'Bucket': 'mission-images',
          'ContentType': 'image/webp',
          'Key': 'uploads/1-abc.webp',
          'Metadata': {
              'original-name': 'Robot%20danseur%20%C3%A9t%C3%A9.jpg',
          },
      })
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  store.set(BlobKey('uploads/1-abc.webp'), b'webp bytes', 'image/webp', 'Robot danseur été.jpg')


def test_set_without_original_name(s3, stubber: Stubber) -> None:
  stubber.add_response(
      'put_object', {}, {
          'Body': b'derivative',
          'Bucket': 'mission-cache',
          'ContentType': 'image/avif',
          'Key': 'transformed/uploads/1-abc.webp-400xauto-q80-avif-cover',
          'Metadata': {},
      })
  store = S3BlobStore.from_config(StoreName.IMAGES_CACHE, s3, CONFIG)

  store.set(
      BlobKey('transformed/uploads/1-abc.webp-400xauto-q80-avif-cover'), b'derivative',
      'image/avif')


def test_get_larger_than_max_size(s3, stubber: Stubber) -> None:
  stubber.add_response(
      'get_object', {
          'Body': body(b'\x00' * 64),
          'ContentType': 'video/mp4',
          'ContentLength': 64,
      })
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  assert store.get_with_metadata(KEY, max_size=16) == LargeObject(size=64, content_type='video/mp4')


def test_get_within_max_size(s3, stubber: Stubber) -> None:
  stubber.add_response(
      'get_object', {
          'Body': body(b'jpeg bytes'),
          'ContentType': 'image/jpeg',
          'ContentLength': 10,
      })
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  assert store.get_with_metadata(KEY, max_size=16) == StoredObject(b'jpeg bytes', 'image/jpeg')


def test_presigned_url(s3) -> None:
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  url = store.presigned_url(KEY, 3600)

  assert url.startswith('https://')
  assert 'mission-images' in url
  assert KEY in url


def test_presigned_post(s3) -> None:
  store = S3BlobStore.from_config(StoreName.IMAGES, s3, CONFIG)

  post = store.presigned_post(
      BlobKey('uploads/1-abc.mp4'), 'video/mp4', 100 * 1024 * 1024, 'Robot danseur été.mp4', 600)

  assert 'mission-images' in post.url
  assert post.fields['key'] == 'uploads/1-abc.mp4'
  assert post.fields['Content-Type'] == 'video/mp4'
  assert post.fields['x-amz-meta-original-name'] == 'Robot%20danseur%20%C3%A9t%C3%A9.mp4'

  policy = json.loads(base64.b64decode(post.fields['policy']))
  assert {'Content-Type': 'video/mp4'} in policy['conditions']
  assert ['content-length-range', 1, 100 * 1024 * 1024] in policy['conditions']
