import dataclasses
import re
from enum import Enum
from typing import Optional, Self

from missionimg.typing import BlobKey

MAX_DIMENSION = 2000
MIN_QUALITY = 1
MAX_QUALITY = 100
DEFAULT_QUALITY = 80

CACHE_KEY_PREFIX = 'transformed/'

TRANSFORMABLE_TYPES = frozenset([
    'image/jpeg',
    'image/png',
    'image/gif',
    'image/webp',
    'image/avif',
])


class ImageFormat(Enum):
  WEBP = 'webp'
  AVIF = 'avif'
  JPEG = 'jpeg'
  PNG = 'png'

  @classmethod
  def maybe_from_param(cls, f: str) -> Optional['ImageFormat']:
    return FORMAT_PARAMS.get(f)

  @classmethod
  def from_content_type(cls, content_type: str) -> 'ImageFormat':
    # GIF and anything unmapped is re-encoded as JPEG.
    return FORMAT_BY_CONTENT_TYPE.get(content_type, cls.JPEG)

  @property
  def content_type(self) -> str:
    return f'image/{self.value}'

  @property
  def suffix(self) -> str:
    match self:
      case ImageFormat.WEBP:
        return '.webp'
      case ImageFormat.AVIF:
        return '.avif'
      case ImageFormat.JPEG:
        return '.jpg'
      case ImageFormat.PNG:
        return '.png'
      case _:
        raise Exception('system error')


FORMAT_PARAMS: dict[str, ImageFormat] = {
    'webp': ImageFormat.WEBP,
    'avif': ImageFormat.AVIF,
    'jpeg': ImageFormat.JPEG,
    'jpg': ImageFormat.JPEG,
    'png': ImageFormat.PNG,
}

FORMAT_BY_CONTENT_TYPE: dict[str, ImageFormat] = {
    'image/jpeg': ImageFormat.JPEG,
    'image/png': ImageFormat.PNG,
    'image/webp': ImageFormat.WEBP,
    'image/avif': ImageFormat.AVIF,
}


class FitMode(Enum):
  COVER = 'cover'
  CONTAIN = 'contain'
  FILL = 'fill'
  INSIDE = 'inside'
  OUTSIDE = 'outside'

  @classmethod
  def from_param(cls, fit: Optional[str]) -> 'FitMode':
    try:
      return cls(fit)
    except ValueError:
      return cls.COVER


class AcceptHeader:
  types: list[bool]

  # Order of preference when negotiating.
  negotiable = [ImageFormat.AVIF, ImageFormat.WEBP]

  def __init__(self, types: list[bool]):
    self.types = types

  @classmethod
  def from_str(cls, accept_header: str) -> Self:
    return cls([fmt.content_type in accept_header for fmt in cls.negotiable])

  def supports(self, image_type: ImageFormat) -> bool:
    return image_type in self.negotiable and self.types[self.negotiable.index(image_type)]

  def preferred(self) -> Optional[ImageFormat]:
    for image_type in self.negotiable:
      if self.supports(image_type):
        return image_type
    return None


def clamp(value: int, lower: int, upper: int) -> int:
  return min(max(lower, value), upper)


def first_param(qs: dict[str, list[str]], name: str) -> Optional[str]:
  values = qs.get(name)
  if not values:
    return None
  return values[0]


LEADING_INT_RE = re.compile(r'\s*([+-]?[0-9]+)')


def parse_int(s: Optional[str]) -> Optional[int]:
  """Read the leading integer of ``s``, so ``12.5`` is 12 and ``400px`` is 400."""
  if s is None:
    return None
  m = LEADING_INT_RE.match(s)
  if m is None:
    return None
  return int(m[1])


@dataclasses.dataclass(eq=True, frozen=True)
class TransformOptions:
  width: Optional[int] = None
  height: Optional[int] = None
  quality: int = DEFAULT_QUALITY
  format: Optional[ImageFormat] = None
  fit: FitMode = FitMode.COVER

  @classmethod
  def from_query(cls, qs: dict[str, list[str]], accept: AcceptHeader) -> 'TransformOptions':
    width = parse_int(first_param(qs, 'w'))
    height = parse_int(first_param(qs, 'h'))
    quality = parse_int(first_param(qs, 'q'))

    f = first_param(qs, 'f')
    if not f:
      image_format = accept.preferred()
    else:
      # An unknown explicit format keeps the source format, without negotiation.
      image_format = ImageFormat.maybe_from_param(f.lower())

    return cls(
        width=None if width is None else clamp(width, 1, MAX_DIMENSION),
        height=None if height is None else clamp(height, 1, MAX_DIMENSION),
        quality=DEFAULT_QUALITY if quality is None else clamp(quality, MIN_QUALITY, MAX_QUALITY),
        format=image_format,
        fit=FitMode.from_param(first_param(qs, 'fit')))

  def needs_transformation(self) -> bool:
    return self.width is not None or self.height is not None or self.format is not None

  def cache_key(self, original_key: BlobKey) -> BlobKey:
    parts = [str(original_key)]

    if self.width is not None or self.height is not None:
      w = 'auto' if self.width is None else str(self.width)
      h = 'auto' if self.height is None else str(self.height)
      parts.append(f'{w}x{h}')

    parts.append(f'q{self.quality}')

    if self.format is not None:
      parts.append(self.format.value)

    parts.append(self.fit.value)

    return BlobKey(CACHE_KEY_PREFIX + '-'.join(parts))
