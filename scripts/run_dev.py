from __future__ import annotations

import os

import uvicorn

from vmwatchdog.app.main import configure_logging, create_app
from vmwatchdog.core.settings import load_settings


if __name__ == "__main__":
    settings = load_settings(os.getenv("VMWATCHDOG_CONFIG", "config/config.example.yaml"))
    configure_logging(settings.app.log_level)
    app = create_app(settings=settings, use_mock=True)
    uvicorn.run(app, host=settings.app.host, port=settings.app.port, reload=False)
