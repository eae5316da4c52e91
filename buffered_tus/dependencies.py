from fastapi import Request

from buffered_tus.config import Config
from buffered_tus.store import BufferedUploadStore


def get_config(request: Request) -> Config:
    """Extract the application Config from the request."""
    config: Config = request.app.state.config
    return config


def get_store(request: Request) -> BufferedUploadStore:
    """Extract the buffered upload store from the request."""
    store: BufferedUploadStore = request.app.state.upload_store
    return store
