import dataclasses
from fractions import Fraction
from typing import Any, Optional

from pyvips import Extend, Image  # type: ignore

from missionimg.options import FitMode, ImageFormat, TransformOptions

PADDING_LEVEL = 230.0
FLATTEN_BACKGROUND = [255.0, 255.0, 255.0]
PNG_COMPRESSION = 9

UPLOAD_MAX_DIMENSION = 2000
UPLOAD_QUALITY = 85

UPLOAD_OPTIONS = TransformOptions(
    width=UPLOAD_MAX_DIMENSION,
    height=UPLOAD_MAX_DIMENSION,
    quality=UPLOAD_QUALITY,
    format=ImageFormat.WEBP,
    fit=FitMode.INSIDE)


@dataclasses.dataclass(eq=True, frozen=True)
class Size:
  width: int
  height: int

  @classmethod
  def from_image(cls, image: Image) -> 'Size':
    return cls(image.get('width'), image.get('height'))

  def scale(self, ratio: Fraction) -> 'Size':
    return Size(max(1, round(self.width * ratio)), max(1, round(self.height * ratio)))

  def bound(self, other: 'Size') -> 'Size':
    return Size(min(self.width, other.width), min(self.height, other.height))


@dataclasses.dataclass(frozen=True)
class Area:
  x: int
  y: int
  width: int
  height: int

  @classmethod
  def centred(cls, frame: Size, size: Size) -> 'Area':
    return cls((frame.width - size.width) // 2, (frame.height - size.height) // 2, size.width,
               size.height)


@dataclasses.dataclass(frozen=True)
class ResizePlan:
  """Geometry of a resize: scale to ``scaled``, then crop or pad.

  ``crop`` is an area of the scaled image to keep. ``canvas`` is the final
  size the scaled image is centred in. At most one of them is set.
  """
  scaled: Size
  crop: Optional[Area] = None
  canvas: Optional[Size] = None


@dataclasses.dataclass(frozen=True)
class Transformed:
  data: bytes
  content_type: str


def calc_resize_plan(
    original: Size,
    width: Optional[int],
    height: Optional[int],
    fit: FitMode,
) -> ResizePlan:
  if width is None and height is None:
    return ResizePlan(original)

  # A single axis keeps the aspect ratio whatever the fit mode.
  if width is None or height is None:
    if width is not None:
      ratio = Fraction(width, original.width)
    else:
      assert height is not None
      ratio = Fraction(height, original.height)
    return ResizePlan(original.scale(min(ratio, Fraction(1))))

  # Enlargement is disabled, so the box never exceeds the original on either axis.
  box = Size(width, height).bound(original)
  wr = Fraction(box.width, original.width)
  hr = Fraction(box.height, original.height)

  match fit:
    case FitMode.FILL:
      return ResizePlan(box)
    case FitMode.INSIDE:
      return ResizePlan(original.scale(min(wr, hr)))
    case FitMode.OUTSIDE:
      return ResizePlan(original.scale(max(wr, hr)))
    case FitMode.COVER:
      scaled = original.scale(max(wr, hr))
      kept = box.bound(scaled)
      if kept == scaled:
        return ResizePlan(scaled)
      return ResizePlan(scaled, crop=Area.centred(scaled, kept))
    case FitMode.CONTAIN:
      scaled = original.scale(min(wr, hr))
      if box == scaled:
        return ResizePlan(scaled)
      return ResizePlan(scaled, canvas=box)
    case _:
      raise Exception('system error')


def padding_color(image: Image) -> list[float]:
  if image.hasalpha():
    return [PADDING_LEVEL] * (image.bands - 1) + [0.0]
  return [PADDING_LEVEL] * image.bands


def resize_image(image: Image, options: TransformOptions) -> Image:
  original = Size.from_image(image)
  plan = calc_resize_plan(original, options.width, options.height, options.fit)

  if plan.scaled != original:
    image = image.resize(
        plan.scaled.width / original.width, vscale=plan.scaled.height / original.height)

    # Rounding inside libvips may leave one extra pixel.
    resized = Size.from_image(image)
    if resized != plan.scaled:
      bounded = resized.bound(plan.scaled)
      image = image.extract_area(0, 0, bounded.width, bounded.height)

  if plan.crop is not None:
    current = Size.from_image(image)
    area = Area.centred(current, Size(plan.crop.width, plan.crop.height).bound(current))
    image = image.extract_area(area.x, area.y, area.width, area.height)

  if plan.canvas is not None:
    offset = Area.centred(plan.canvas, Size.from_image(image))
    image = image.embed(
        offset.x,
        offset.y,
        plan.canvas.width,
        plan.canvas.height,
        extend=Extend.BACKGROUND,
        background=padding_color(image))

  return image


def encode_params(image_format: ImageFormat, quality: int) -> dict[str, Any]:
  match image_format:
    case ImageFormat.WEBP | ImageFormat.AVIF | ImageFormat.JPEG:
      return {'Q': quality}
    case ImageFormat.PNG:
      # PNG is lossless; only the effort is tunable.
      return {'compression': PNG_COMPRESSION}
    case _:
      raise Exception('system error')


def transform(data: bytes, source_content_type: str, options: TransformOptions) -> Transformed:
  image: Image = Image.new_from_buffer(data, '')

  if options.width is not None or options.height is not None:
    image = resize_image(image, options)

  output_format = options.format or ImageFormat.from_content_type(source_content_type)

  if output_format == ImageFormat.JPEG and image.hasalpha():
    image = image.flatten(background=FLATTEN_BACKGROUND[:image.bands - 1])

  encoded: bytes = image.write_to_buffer(
      output_format.suffix, **encode_params(output_format, options.quality))

  return Transformed(data=encoded, content_type=output_format.content_type)


def normalize_upload(data: bytes, content_type: str) -> Transformed:
  return transform(data, content_type, UPLOAD_OPTIONS)
