"""Run the Customs Classification Pipeline server."""
import uvicorn

from customs_pipeline.utils.config import get_settings
from customs_pipeline.utils.log_config import configure_logging

if __name__ == "__main__":
    settings = get_settings()
    configure_logging(settings)
    print(f"Starting {settings.APP_NAME}...")
    print("Server running at: http://localhost:8000")
    print("Press CTRL+C to stop.\n")
    uvicorn.run("customs_pipeline.api.main:app", host="0.0.0.0", port=8000, reload=settings.DEBUG)
