"""FastAPI management API for hookrelay.

Endpoint registration, delivery history and event broadcast over HTTP,
with background delivery running in the same process.

Example:
    ```python
    import uvicorn
    from hookrelay.api import create_app

    app = create_app()
    uvicorn.run(app, host="0.0.0.0", port=8000)
    ```

Or run directly:
    ```bash
    uvicorn hookrelay.api:app
    ```
"""

from .app import app, create_app
from .router import router

__all__ = [
    "app",
    "create_app",
    "router",
]
