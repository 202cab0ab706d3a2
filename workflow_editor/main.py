"""Entry point for serving the workflow editor engine."""

import uvicorn

from .config import load_config
from .factory import create_app

config = load_config()
app = create_app(config)


def main():
    uvicorn.run(app, **config.get_uvicorn_config())


if __name__ == "__main__":
    main()
