from fastapi import FastAPI
from marketplace.db import Base, engine
from marketplace.api.routes import router as api_router
import marketplace.models  # noqa: F401 ensure models are imported so tables are known

# create FastAPI instance
app = FastAPI(title="Church Community Marketplace")
app.include_router(api_router)


@app.on_event("startup")
def on_startup_create_tables():
    # Ensure database tables are created on startup
    Base.metadata.create_all(bind=engine)
