"""
Runtime settings for Passport Studio, read from the environment (and .env)
"""

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()

EXPORT_SIZE = (1050, 1350)  # 35mm x 45mm at 300 DPI
EXPORT_DPI = 300
CROP_ASPECT = 35 / 45
ZOOM_MIN, ZOOM_MAX, ZOOM_STEP = 1.0, 3.0, 0.1
ALLOWED_EXTENSIONS = {'.jpg', '.jpeg', '.png', '.webp', '.bmp', '.gif'}

INSTRUCTION = """DO NOT CHANGE THE PERSON'S POSE, FACE, OR HEAD POSITION.
KEEP THE IDENTITY AND PHYSICAL STANCE EXACTLY AS SHOWN.
ONLY change the clothing to a professional black suit with a crisp white shirt and a solid dark blue tie.
Change the background to a solid flat royal blue.
Ensure the lighting is professional studio quality while maintaining the original facial structure perfectly."""

API_KEY_VARS = ('API_KEY', 'GEMINI_API_KEY', 'GOOGLE_API_KEY')


def read_api_key():
    for name in API_KEY_VARS:
        value = os.environ.get(name, '').strip()
        if value:
            return value
    return None


@dataclass(frozen=True)
class SynthesisConfig:
    model: str = 'gemini-2.5-flash-image'
    instruction: str = INSTRUCTION
    aspect_ratio: str = '3:4'
    # Called on every synthesis; nothing checks the key at startup
    api_key_loader: object = field(default=read_api_key, compare=False, repr=False)

    @classmethod
    def from_env(cls):
        return cls(model=os.environ.get('GEMINI_MODEL', cls.model))


@dataclass(frozen=True)
class Settings:
    host: str = '0.0.0.0'
    port: int = 8000
    secret_key: str = 'dev-secret-key'
    max_upload_bytes: int = 50 * 1024 * 1024
    log_level: str = 'INFO'
    synthesis: SynthesisConfig = field(default_factory=SynthesisConfig)

    @classmethod
    def from_env(cls):
        return cls(
            host=os.environ.get('HOST', cls.host),
            port=int(os.environ.get('PORT', cls.port)),
            secret_key=os.environ.get('SECRET_KEY', cls.secret_key),
            max_upload_bytes=int(os.environ.get('MAX_UPLOAD_MB', 50)) * 1024 * 1024,
            log_level=os.environ.get('LOG_LEVEL', cls.log_level).upper(),
            synthesis=SynthesisConfig.from_env(),
        )
