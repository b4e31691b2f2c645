"""Main FastAPI application."""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from converse_driver import __version__
from converse_driver.api.endpoints import router
from converse_driver.utils.logging import setup_logging

setup_logging()

# Create FastAPI application
app = FastAPI(
    title="Converse Driver",
    description=(
        "A conversational service that runs tool-augmented turns against Amazon Bedrock, "
        "executing the tools the model requests until it produces an answer."
    ),
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {
            "name": "Conversation",
            "description": "Send messages, read back history and discard conversations.",
        },
        {
            "name": "Health",
            "description": "Service health monitoring and status checks.",
        },
    ],
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("converse_driver.main:app", host="0.0.0.0", port=8000, reload=True, log_level="info")
