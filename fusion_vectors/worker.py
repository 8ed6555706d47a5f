import asyncio
import datetime
import traceback

import psycopg
import structlog

from .errors import FusionVectorsError
from .models import VectorField
from .pipeline import EmbeddingPipeline

logger = structlog.get_logger()


class Worker:
    """
    Periodically backfills missing vectors until asked to shut down.

    A shutdown request stops the running job before its next sub-batch and
    ends the poll loop.
    """

    def __init__(
        self,
        pipeline: EmbeddingPipeline,
        poll_interval: datetime.timedelta = datetime.timedelta(minutes=1),
        once: bool = False,
        field: VectorField | None = None,
        exit_on_error: bool | None = None,
    ):
        self.pipeline = pipeline
        self.poll_interval = poll_interval.total_seconds()
        self.once = once
        self.field = field
        self.exit_on_error = exit_on_error
        self.shutdown_requested = asyncio.Event()
        if once and exit_on_error is None:
            # once implies exit-on-error
            self.exit_on_error = True

    def request_graceful_shutdown(self) -> None:
        """
        Request a graceful shutdown of the worker.
        """
        self.shutdown_requested.set()
        self.pipeline.request_cancellation()

    async def _handle_error(self, error_message: str) -> Exception:
        await logger.aerror(error_message)
        if self.exit_on_error:
            await logger.ainfo("exiting worker due to error")
        return Exception(error_message)

    async def run(self) -> Exception | None:
        await logger.adebug("starting embedding worker")

        while not self.shutdown_requested.is_set():
            try:
                result = await self.pipeline.process_missing(self.field)
                if result.errors:
                    await logger.awarning(
                        "some records failed to embed", **result.model_dump()
                    )
            except psycopg.OperationalError as e:
                if "connection failed" in str(e):
                    err_msg = f"unable to connect to database: {str(e)}"
                else:
                    err_msg = f"unexpected error: {str(e)}"
                exception = await self._handle_error(err_msg)
                if self.exit_on_error:
                    return exception
            except FusionVectorsError as e:
                exception = await self._handle_error(f"{e.msg}: {str(e)}")
                if self.exit_on_error:
                    return exception
            except Exception as e:
                # catch any exceptions, log them, and keep on going
                for exception_line in traceback.format_exception(e):
                    for line in exception_line.rstrip().split("\n"):
                        await logger.adebug(line)
                exception = await self._handle_error(f"unexpected error: {str(e)}")
                if self.exit_on_error:
                    return exception

            if self.once:
                await logger.ainfo("once mode, exiting...")
                return None

            poll_interval_str = datetime.timedelta(seconds=self.poll_interval)
            await logger.ainfo(
                f"sleeping for {poll_interval_str} before polling for new work"
            )
            try:
                await asyncio.wait_for(
                    self.shutdown_requested.wait(), timeout=self.poll_interval
                )
                # shutdown event was set, the loop should exit
                await logger.ainfo("got a graceful shutdown request")
            except asyncio.TimeoutError:
                # timeout means the sleep completed
                pass

        await logger.ainfo("exiting worker.run()")
        return None
