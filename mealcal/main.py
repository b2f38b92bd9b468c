from __future__ import annotations

import os

import uvicorn


def main() -> None:
    host = os.getenv("MEALCAL_HOST", "0.0.0.0")
    port = int(os.getenv("MEALCAL_PORT", "8080"))
    uvicorn.run("mealcal.web_admin:create_app", host=host, port=port, reload=False, factory=True)


if __name__ == "__main__":
    main()
