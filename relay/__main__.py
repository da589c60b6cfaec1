import uvicorn

from relay.infrastructure.config.settings import get_settings


def main():
    settings = get_settings()
    uvicorn.run(
        "relay.application.websocket.ws_server:app",
        host=settings.host,
        port=settings.port,
    )


if __name__ == "__main__":
    main()
