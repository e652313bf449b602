"""
Crop export: maps a crop rectangle of the synthesized photo onto the fixed
35x45mm print canvas and encodes it as PNG.
"""

import io
import logging
import math
import time
from dataclasses import dataclass

from PIL import Image

from config import CROP_ASPECT, EXPORT_DPI, EXPORT_SIZE
from errors import DecodeFailure, RenderingUnavailable

logger = logging.getLogger(__name__)

EXPORT_PREFIX = 'passport_standard_35x45'


@dataclass(frozen=True)
class CropRectangle:
    """Region of the displayed image, in that image's pixel coordinates."""
    x: float
    y: float
    width: float
    height: float

    def __post_init__(self):
        if not all(math.isfinite(v) for v in (self.x, self.y, self.width, self.height)):
            raise ValueError('Crop values must be finite')
        if self.width <= 0 or self.height <= 0:
            raise ValueError('Crop width and height must be positive')

    @classmethod
    def from_mapping(cls, data):
        if not isinstance(data, dict):
            raise ValueError('Crop must be an object')
        try:
            values = {k: float(data[k]) for k in ('x', 'y', 'width', 'height')}
        except KeyError as e:
            raise ValueError(f'Crop is missing {e.args[0]}') from e
        except (TypeError, ValueError) as e:
            raise ValueError('Crop values must be numbers') from e
        return cls(**values)

    @property
    def box(self):
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    def aspect_error(self):
        return abs(self.width / self.height - CROP_ASPECT) / CROP_ASPECT

    def to_dict(self):
        return {'x': self.x, 'y': self.y, 'width': self.width, 'height': self.height}


def resample(source, crop, size=EXPORT_SIZE):
    """Draw ``crop`` of the encoded ``source`` image scaled to fill ``size``.

    The rectangle is not clamped to the image; anything outside it comes out
    transparent. Returns PNG bytes.
    """
    try:
        img = Image.open(io.BytesIO(source))
        img.load()
    except (OSError, Image.DecompressionBombError) as e:
        raise DecodeFailure(f'Cannot decode source image: {e}') from e
    if img.mode != 'RGBA':
        img = img.convert('RGBA')

    try:
        out = img.transform(size, Image.Transform.EXTENT, crop.box, resample=Image.Resampling.BICUBIC)
    except (ValueError, MemoryError) as e:
        raise RenderingUnavailable(f'Cannot render export canvas: {e}') from e

    buf = io.BytesIO()
    out.save(buf, format='PNG', dpi=(EXPORT_DPI, EXPORT_DPI))
    logger.info(f"🖼️ Resampled {img.width}x{img.height} crop {crop.width:.0f}x{crop.height:.0f} -> {size[0]}x{size[1]}")
    return buf.getvalue()


def export_filename(now=None):
    stamp = int((time.time() if now is None else now) * 1000)
    return f'{EXPORT_PREFIX}_{stamp}.png'
