from __future__ import annotations

import os

import uvicorn

from pipefix.service.app import create_app


def main() -> None:
    uvicorn.run(
        create_app(),
        host=os.environ.get("PIPEFIX_HOST", "127.0.0.1"),
        port=int(os.environ.get("PIPEFIX_PORT", "8088")),
    )


if __name__ == "__main__":
    main()
