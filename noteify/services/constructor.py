import os
from typing import TYPE_CHECKING

from dotenv import load_dotenv

if TYPE_CHECKING:
    from noteify.context import Context

from noteify.constructor import ServerManagerType
from noteify.services.logger import AsyncLoggingService
from noteify.services.manager import ServicesManager

# prefer a project-local .env.local file, then fallback to any .env
load_dotenv(dotenv_path=".env.local")

# -------------------------------------------------------------- #
# Constructor for Dynamic Creation of Services Manager
# -------------------------------------------------------------- #


def construct_services_manager(
    service_type: ServerManagerType,
    context: "Context",
    default_logging_path: str = "logs",
    log_file: str | None = None,
    use_timestamp_logs: bool = True,
    console_logs: bool = True,
):
    """Construct and return a service manager instance based on the service type.

    Args:
        service_type: Type of server manager (DEVELOPMENT, PRODUCTION or TESTING)
        context: Context instance containing server and services
        default_logging_path: Directory to store log files (default: "logs")
        log_file: Specific log file name (optional, overrides use_timestamp_logs)
        use_timestamp_logs: If True and log_file is None, creates timestamped log files (default: True)
        console_logs: If True, log messages are echoed to stdout
    """
    if service_type not in (
        ServerManagerType.DEVELOPMENT,
        ServerManagerType.PRODUCTION,
        ServerManagerType.TESTING,
    ):
        raise ValueError(f"Unsupported service type: {service_type}")

    # create logger
    logging_service = AsyncLoggingService(
        context=context,
        log_dir=default_logging_path,
        log_file=log_file,
        use_timestamp=use_timestamp_logs,
        console_output=console_logs,
        min_level="INFO" if service_type == ServerManagerType.PRODUCTION else "DEBUG",
    )

    # -------------------------------------------------------------- #
    # Audio Conversion Setup
    # -------------------------------------------------------------- #

    from noteify.services.ffmpeg_manager.manager import FFmpegManagerService

    ffmpeg_path = os.getenv("FFMPEG_PATH", "ffmpeg")
    ffmpeg_service_manager = FFmpegManagerService(context=context, ffmpeg_path=ffmpeg_path)

    # -------------------------------------------------------------- #
    # Language Model Setup
    # -------------------------------------------------------------- #

    from noteify.services.ollama_request_manager.manager import OllamaRequestManager

    ollama_request_manager = OllamaRequestManager(context=context)

    # -------------------------------------------------------------- #
    # Session Manager Setup
    # -------------------------------------------------------------- #

    from noteify.services.session.manager import SessionManagerService

    session_manager = SessionManagerService(context=context)

    return ServicesManager(
        context=context,
        logging_service=logging_service,
        ffmpeg_service_manager=ffmpeg_service_manager,
        ollama_request_manager=ollama_request_manager,
        session_manager=session_manager,
    )
