"""
LifeSync realtime server entry point.

Run with `python -m lifesync.main` or point uvicorn at `lifesync.main:app`.
"""

from .app.factory import create_app
from .config import get_config
from .structured_logging.enhanced_logging_config import setup_enhanced_logging

# Early logging setup so import-time log lines are captured
config = get_config()
setup_enhanced_logging(config.logging.to_dict())

app = create_app()


def main() -> None:
    import uvicorn

    server_config = get_config().server
    uvicorn.run(
        "lifesync.main:app",
        host=server_config.host,
        port=server_config.port,
        reload=False,
        access_log=True,
        use_colors=False,
    )


if __name__ == "__main__":
    main()
