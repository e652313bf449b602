"""
Gemini synthesis client: one generate_content call per portrait, first inline
image in the reply wins.
"""

import base64
import io
import logging
from dataclasses import dataclass

from google import genai
from google.genai import types
from PIL import Image

from config import SynthesisConfig
from errors import ConfigurationError, NoImageProduced, TransportError, UploadDecodeFailure

logger = logging.getLogger(__name__)

# Multi-picture JPEGs (phone HDR gain maps) are plain JPEG to the API
FORMAT_MIME_OVERRIDES = {'MPO': 'image/jpeg'}


def detected_mime(fmt):
    return FORMAT_MIME_OVERRIDES.get(fmt) or Image.MIME.get(fmt, 'image/png')


@dataclass(frozen=True)
class SourceImage:
    data: bytes
    mime_type: str

    @classmethod
    def from_upload(cls, data, declared_mime=None):
        """Decode check an uploaded file; returns ``(SourceImage, (w, h))``.

        The browser-declared ``image/*`` type is kept; Pillow's format is only
        used when the upload carries none.
        """
        if not data:
            raise UploadDecodeFailure('Empty file')
        try:
            img = Image.open(io.BytesIO(data))
            size, fmt = img.size, img.format
            img.verify()
        except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
            raise UploadDecodeFailure(f'Cannot read image: {e}') from e
        if declared_mime and declared_mime.startswith('image/'):
            return cls(data, declared_mime), size
        return cls(data, detected_mime(fmt)), size

    @classmethod
    def from_data_uri(cls, uri):
        try:
            header, payload = uri.split(',', 1)
            mime_type = header.split(';')[0].split(':')[1]
            data = base64.b64decode(payload, validate=True)
        except (IndexError, ValueError) as e:
            raise ValueError('Malformed data URI') from e
        if not data:
            raise ValueError('Data URI carries no image')
        return cls(data, mime_type)

    def to_data_uri(self):
        return f'data:{self.mime_type};base64,{base64.b64encode(self.data).decode("utf-8")}'


@dataclass(frozen=True)
class SynthesisResult(SourceImage):
    mime_type: str = 'image/png'


@dataclass(frozen=True)
class SynthesisRequest:
    image: SourceImage
    instruction: str
    aspect_ratio: str

    def contents(self):
        return [types.Part.from_bytes(data=self.image.data, mime_type=self.image.mime_type), self.instruction]

    def generation_config(self):
        return types.GenerateContentConfig(image_config=types.ImageConfig(aspect_ratio=self.aspect_ratio))


def first_inline_image(response):
    """Bytes of the first image-bearing part of the first candidate, else None."""
    candidates = getattr(response, 'candidates', None) or []
    if not candidates or candidates[0].content is None:
        return None
    for part in candidates[0].content.parts or []:
        blob = getattr(part, 'inline_data', None)
        if blob is not None and blob.data:
            return SynthesisResult(blob.data, blob.mime_type or 'image/png')
    return None


class SynthesisClient:
    def __init__(self, config=None, client_factory=genai.Client):
        self.config = config or SynthesisConfig()
        self._client_factory = client_factory

    def build_request(self, source):
        return SynthesisRequest(source, self.config.instruction, self.config.aspect_ratio)

    def synthesize(self, source):
        if not source.data:
            raise ValueError('Source image is empty')
        api_key = self.config.api_key_loader()
        if not api_key:
            raise ConfigurationError()

        request = self.build_request(source)
        logger.info(f"🚀 Synthesizing with {self.config.model} ({len(source.data)} bytes, {source.mime_type})")
        try:
            client = self._client_factory(api_key=api_key)
            response = client.models.generate_content(
                model=self.config.model,
                contents=request.contents(),
                config=request.generation_config(),
            )
        except Exception as e:
            logger.error(f"❌ Synthesis call failed: {e}")
            raise TransportError(str(e) or None) from e

        result = first_inline_image(response)
        if result is None:
            logger.warning("⚠️ Response carried no inline image")
            raise NoImageProduced()
        logger.info(f"✅ Synthesized {len(result.data)} bytes")
        return result
