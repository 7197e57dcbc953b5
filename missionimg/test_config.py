from logging import Logger

import pytest

from missionimg.config import Config, StoreName

ENV = {
    'AWS_REGION': 'eu-west-3',
    'IMAGES_BUCKET': 'mission-images',
    'IMAGES_CACHE_BUCKET': 'mission-cache',
}


def test_from_env_defaults(logger: Logger) -> None:
  assert Config.from_env(logger, ENV) == Config(
      region='eu-west-3',
      images_bucket='mission-images',
      cache_bucket='mission-cache',
      basedir='/images',
      error_max_age=0)


def test_from_env_overrides(logger: Logger) -> None:
  config = Config.from_env(logger, {**ENV, 'IMAGES_BASEDIR': '/media/', 'ERROR_MAX_AGE': '30'})

  assert config is not None
  assert config.basedir == '/media'
  assert config.error_max_age == 30


@pytest.mark.parametrize('missing', list(ENV.keys()))
def test_from_env_missing(logger: Logger, missing: str) -> None:
  env = {k: v for k, v in ENV.items() if k != missing}

  assert Config.from_env(logger, env) is None


def test_from_env_invalid(logger: Logger) -> None:
  assert Config.from_env(logger, {**ENV, 'ERROR_MAX_AGE': 'soon'}) is None


def test_bucket_for() -> None:
  config = Config('eu-west-3', 'mission-images', 'mission-cache')

  assert config.bucket_for(StoreName.IMAGES) == 'mission-images'
  assert config.bucket_for(StoreName.IMAGES_CACHE) == 'mission-cache'


def test_hashable() -> None:
  assert {Config('r', 'a', 'b'): 1}[Config('r', 'a', 'b')] == 1
