from fastapi import Request

from cardgrader.services.credentials import SettingsCredentialProvider
from cardgrader.services.dispatcher import CardProcessor


def get_processor(request: Request) -> CardProcessor:
    """The processor started by the application lifespan."""
    processor: CardProcessor = request.app.state.processor
    return processor


def get_credentials(request: Request) -> SettingsCredentialProvider:
    credentials: SettingsCredentialProvider = request.app.state.credentials
    return credentials
