"""
Photo pipeline state for one browser session.

Every transition goes through a method of ``Pipeline`` under its lock. The
synthesis call itself runs outside the lock; its completion is matched against
the token handed out by ``begin_synthesis`` so a reply that arrives after a
restart is dropped.
"""

import logging
import math
import threading
from collections import namedtuple
from enum import Enum

from config import ZOOM_MAX, ZOOM_MIN, ZOOM_STEP
from errors import EXPORT_MESSAGE, ExportFailed, UploadRejected
from resampler import resample

logger = logging.getLogger(__name__)

# Crop rectangles further than this from 35:45 are logged
ASPECT_TOLERANCE = 0.01


class Phase(str, Enum):
    IDLE = 'idle'
    IMAGE_LOADED = 'image_loaded'
    SYNTHESIZING = 'synthesizing'
    RESULT_READY = 'result_ready'
    ERROR = 'error'


Attempt = namedtuple('Attempt', 'token source')


def clamp_zoom(value):
    value = float(value)
    if not math.isfinite(value):
        raise ValueError('Zoom must be a finite number')
    value = min(ZOOM_MAX, max(ZOOM_MIN, value))
    return round(round(value / ZOOM_STEP) * ZOOM_STEP, 1)


class Pipeline:
    def __init__(self):
        self._lock = threading.Lock()
        self.phase = Phase.IDLE
        self.source = None
        self.result = None
        self.error = None
        self.crop = None
        self.zoom = ZOOM_MIN
        self.token = 0

    def load_image(self, source):
        with self._lock:
            if self.phase not in (Phase.IDLE, Phase.IMAGE_LOADED):
                raise UploadRejected()
            self.source = source
            self.result = None
            self.error = None
            self.crop = None
            self.zoom = ZOOM_MIN
            self.phase = Phase.IMAGE_LOADED

    def begin_synthesis(self):
        """Enter SYNTHESIZING and return the ``Attempt``, or None if refused."""
        with self._lock:
            if self.source is None or self.phase not in (Phase.IMAGE_LOADED, Phase.ERROR):
                return None
            self.token += 1
            self.error = None
            self.result = None
            self.crop = None
            self.phase = Phase.SYNTHESIZING
            return Attempt(self.token, self.source)

    def finish_synthesis(self, token, result):
        with self._lock:
            if not self._is_current(token):
                logger.info(f"⏭️ Dropping stale synthesis result (token {token})")
                return False
            self.result = result
            self.zoom = ZOOM_MIN
            self.phase = Phase.RESULT_READY
            return True

    def fail_synthesis(self, token, message):
        with self._lock:
            if not self._is_current(token):
                logger.info(f"⏭️ Dropping stale synthesis failure (token {token})")
                return False
            self.error = message
            self.phase = Phase.ERROR
            return True

    def restart(self):
        with self._lock:
            self.token += 1
            self.source = None
            self.result = None
            self.error = None
            self.crop = None
            self.zoom = ZOOM_MIN
            self.phase = Phase.IDLE

    def report_crop(self, crop):
        with self._lock:
            if self.result is None:
                return False
            if crop.aspect_error() > ASPECT_TOLERANCE:
                logger.warning(f"⚠️ Crop {crop.width:.1f}x{crop.height:.1f} is off the 35:45 ratio")
            self.crop = crop
            return True

    def set_zoom(self, value):
        with self._lock:
            if self.result is None:
                return False
            self.zoom = clamp_zoom(value)
            return True

    def export(self, render=resample):
        """PNG bytes of the current crop, or None when export is not available."""
        with self._lock:
            if self.phase is not Phase.RESULT_READY or self.crop is None:
                return None
            result, crop = self.result, self.crop
        try:
            return render(result.data, crop)
        except ExportFailed:
            with self._lock:
                if self.result is result:
                    self.error = EXPORT_MESSAGE
            raise

    def _is_current(self, token):
        return self.phase is Phase.SYNTHESIZING and token == self.token

    @property
    def can_upload(self):
        return self.phase in (Phase.IDLE, Phase.IMAGE_LOADED)

    @property
    def can_synthesize(self):
        return self.source is not None and self.phase in (Phase.IMAGE_LOADED, Phase.ERROR)

    @property
    def can_export(self):
        return self.phase is Phase.RESULT_READY and self.crop is not None

    def snapshot(self):
        with self._lock:
            return {
                'phase': self.phase.value,
                'error': self.error,
                'has_source': self.source is not None,
                'has_result': self.result is not None,
                'can_upload': self.can_upload,
                'can_synthesize': self.can_synthesize,
                'can_export': self.can_export,
                'can_adjust': self.result is not None,
                'zoom': self.zoom,
                'crop': self.crop.to_dict() if self.crop else None,
            }
