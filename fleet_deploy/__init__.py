"""
Fleet Deploy

Install Android APKs on every connected adb device in parallel, with
version filtering, battery/storage health checks and per-device reporting.

Usage:
    from fleet_deploy.config import RunConfig
    from fleet_deploy.pipeline import DeploymentPipeline

    result = asyncio.run(DeploymentPipeline(RunConfig(), ["app.apk"]).run())
"""

__version__ = "1.0.0"
