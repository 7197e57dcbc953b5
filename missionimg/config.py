import dataclasses
from enum import Enum
from logging import Logger
from typing import Mapping, Optional

DEFAULT_BASEDIR = '/images'
DEFAULT_ERROR_MAX_AGE = 0


class StoreName(Enum):
  IMAGES = 'images'
  IMAGES_CACHE = 'images-cache'


@dataclasses.dataclass(eq=True, frozen=True)
class Config:
  region: str
  images_bucket: str
  cache_bucket: str
  basedir: str = DEFAULT_BASEDIR
  error_max_age: int = DEFAULT_ERROR_MAX_AGE

  @classmethod
  def from_env(cls, log: Logger, environ: Mapping[str, str]) -> Optional['Config']:
    try:
      region = environ['AWS_REGION']
      images_bucket = environ['IMAGES_BUCKET']
      cache_bucket = environ['IMAGES_CACHE_BUCKET']
      basedir = environ.get('IMAGES_BASEDIR', DEFAULT_BASEDIR).rstrip('/')
      error_max_age = int(environ.get('ERROR_MAX_AGE', str(DEFAULT_ERROR_MAX_AGE)))
    except KeyError as e:
      log.warning({
          'message': 'environment variable not found',
          'key': str(e),
      })
      return None
    except ValueError as e:
      log.warning({
          'message': 'invalid environment variable',
          'reason': str(e),
      })
      return None

    return cls(
        region=region,
        images_bucket=images_bucket,
        cache_bucket=cache_bucket,
        basedir=basedir,
        error_max_age=error_max_age)

  def bucket_for(self, name: StoreName) -> str:
    match name:
      case StoreName.IMAGES:
        return self.images_bucket
      case StoreName.IMAGES_CACHE:
        return self.cache_bucket
      case _:
        raise Exception('system error')
