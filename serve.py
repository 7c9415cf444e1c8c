"""Run the tradeflow API with uvicorn."""
import os

import uvicorn

from tradeflow.api.app import create_app

app = create_app(use_lifespan=True)


if __name__ == "__main__":
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
