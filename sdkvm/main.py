from sdkvm.api.main import app

if __name__ == "__main__":
    import logging
    import os

    import uvicorn

    logging.basicConfig(level=(os.getenv("SDKVM_LOG_LEVEL") or "INFO").upper())
    host = os.getenv("SDKVM_HOST", "127.0.0.1")
    port = int(os.getenv("SDKVM_PORT", "8010"))
    uvicorn.run(app, host=host, port=port)
