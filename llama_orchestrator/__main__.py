"""Run the orchestrator API under uvicorn."""

import logging

import uvicorn

from llama_orchestrator.api import create_app
from llama_orchestrator.config import RuntimeSettings


def main() -> None:
    runtime = RuntimeSettings()
    logging.basicConfig(
        level=getattr(logging, runtime.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(runtime=runtime)
    uvicorn.run(app, host=runtime.api_host, port=runtime.api_port, log_config=None)


if __name__ == "__main__":
    main()
