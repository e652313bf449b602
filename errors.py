"""Exception types shared by the upload, synthesis and export steps."""

GENERIC_SYNTHESIS_MESSAGE = 'Synthesis disrupted. Check neural link.'
NO_IMAGE_MESSAGE = 'AI failed to lock pose. Try a more direct portrait.'
EXPORT_MESSAGE = 'Export interrupted.'


class PassportStudioError(Exception):
    default_message = 'Unexpected error'

    def __init__(self, message=None):
        super().__init__(message or self.default_message)

    @property
    def message(self):
        return self.args[0]


class UploadDecodeFailure(PassportStudioError):
    default_message = 'File is not a readable image'


class UploadRejected(PassportStudioError):
    default_message = 'Restart before uploading a new photo'


class SynthesisError(PassportStudioError):
    default_message = GENERIC_SYNTHESIS_MESSAGE


class ConfigurationError(SynthesisError):
    default_message = 'API_KEY is not configured'


class TransportError(SynthesisError):
    pass


class NoImageProduced(SynthesisError):
    default_message = NO_IMAGE_MESSAGE


class ExportFailed(PassportStudioError):
    default_message = EXPORT_MESSAGE


class RenderingUnavailable(ExportFailed):
    pass


class DecodeFailure(ExportFailed):
    pass
