from __future__ import annotations

import os

import uvicorn


def main() -> None:
    uvicorn.run("babygpt.app:app", host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "3000")))


if __name__ == "__main__":
    main()
