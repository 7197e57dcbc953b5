"""Decoding of ``multipart/form-data`` request bodies.

Lambda hands over the raw body, so the parts are collected with the
low-level ``python_multipart`` parser, keeping each part's own
``Content-Type`` (the declared MIME type of an uploaded file).
"""

import dataclasses
from typing import Optional

from python_multipart import MultipartParser
from python_multipart.exceptions import FormParserError
from python_multipart.multipart import parse_options_header

DEFAULT_PART_CONTENT_TYPE = 'application/octet-stream'


class InvalidForm(Exception):
  pass


@dataclasses.dataclass
class FormPart:
  name: str
  filename: Optional[str]
  content_type: str
  data: bytes


class PartCollector:

  def __init__(self) -> None:
    self.parts: dict[str, FormPart] = {}
    self.headers: dict[str, bytes] = {}
    self.header_field = bytearray()
    self.header_value = bytearray()
    self.data = bytearray()

  def on_part_begin(self) -> None:
    self.headers = {}
    self.data = bytearray()

  def on_header_field(self, data: bytes, start: int, end: int) -> None:
    self.header_field += data[start:end]

  def on_header_value(self, data: bytes, start: int, end: int) -> None:
    self.header_value += data[start:end]

  def on_header_end(self) -> None:
    self.headers[self.header_field.decode('latin-1').lower()] = bytes(self.header_value)
    self.header_field = bytearray()
    self.header_value = bytearray()

  def on_part_data(self, data: bytes, start: int, end: int) -> None:
    self.data += data[start:end]

  def on_part_end(self) -> None:
    disposition, params = parse_options_header(self.headers.get('content-disposition'))
    if disposition != b'form-data' or b'name' not in params:
      raise InvalidForm('part without form-data disposition')

    filename = params.get(b'filename')
    content_type = self.headers.get('content-type')

    name = params[b'name'].decode('utf-8', errors='replace')
    self.parts[name] = FormPart(
        name=name,
        filename=None if filename is None else filename.decode('utf-8', errors='replace'),
        content_type=(
            DEFAULT_PART_CONTENT_TYPE
            if content_type is None else content_type.decode('latin-1').strip()),
        data=bytes(self.data))

  def callbacks(self) -> dict:
    return {
        'on_part_begin': self.on_part_begin,
        'on_header_field': self.on_header_field,
        'on_header_value': self.on_header_value,
        'on_header_end': self.on_header_end,
        'on_part_data': self.on_part_data,
        'on_part_end': self.on_part_end,
    }


def parse_form(content_type: str, body: bytes) -> dict[str, FormPart]:
  ctype, params = parse_options_header(content_type)
  if ctype != b'multipart/form-data':
    raise InvalidForm(f'unexpected content type: {content_type}')
  if b'boundary' not in params:
    raise InvalidForm('missing boundary')

  collector = PartCollector()
  parser = MultipartParser(params[b'boundary'], collector.callbacks())
  try:
    parser.write(body)
    parser.finalize()
  except FormParserError as e:
    raise InvalidForm(str(e)) from e

  return collector.parts
