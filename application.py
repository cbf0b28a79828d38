"""
ASGI entry point for the EscrowPay FastAPI application.
Process managers and PaaS buildpacks look for an 'application' object.
"""

from escrowpay.main import app

application = app

if __name__ == "__main__":
    import uvicorn

    from escrowpay.config import settings

    uvicorn.run(application, host=settings.app_host, port=settings.app_port)
