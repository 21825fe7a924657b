"""
Pytest configuration and shared fixtures.

This file is automatically loaded by pytest and provides
fixtures and configuration that can be used across all tests.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

# Configure pytest-asyncio
pytest_plugins = ("pytest_asyncio",)


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Apply a timeout to all tests except those marked as slow."""
    for item in items:
        if "slow" not in item.keywords:
            item.add_marker(pytest.mark.timeout(30))


# ============================================================================
# Mock Services Fixtures
# ============================================================================


@pytest.fixture
def mock_logging_service() -> AsyncMock:
    """Create a mock async logging service."""
    logging_service = AsyncMock()
    logging_service.info = AsyncMock()
    logging_service.debug = AsyncMock()
    logging_service.warning = AsyncMock()
    logging_service.error = AsyncMock()
    return logging_service


@pytest.fixture
def mock_services(mock_logging_service: AsyncMock) -> MagicMock:
    """Create a mock services manager with logging service."""
    services = MagicMock()
    services.logging_service = mock_logging_service
    return services


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock context."""
    context = MagicMock()
    context.is_shutting_down.return_value = False
    return context


# ============================================================================
# Mock Discord Fixtures
# ============================================================================


@pytest.fixture
def mock_discord_bot() -> MagicMock:
    """Create a mock Discord bot instance."""
    bot = MagicMock()
    bot.user = MagicMock()
    bot.user.name = "TestBot"
    bot.user.id = 123456789
    bot.guilds = []
    return bot


@pytest.fixture
def mock_discord_context() -> MagicMock:
    """Create a mock Discord application context (py-cord)."""
    ctx = MagicMock()
    ctx.author = MagicMock()
    ctx.author.name = "TestUser"
    ctx.author.id = 987654321
    ctx.author.voice = None
    ctx.guild = MagicMock()
    ctx.guild.id = 111222333
    ctx.guild.name = "Test Guild"
    ctx.defer = AsyncMock()
    ctx.respond = AsyncMock()
    ctx.followup = MagicMock()
    ctx.followup.send = AsyncMock()
    return ctx


@pytest.fixture
def mock_voice_channel() -> MagicMock:
    """Create a mock Discord voice channel."""
    channel = MagicMock()
    channel.id = 444555666
    channel.name = "Test Voice Channel"
    channel.guild = MagicMock()
    channel.guild.id = 111222333
    channel.connect = AsyncMock()
    return channel


@pytest.fixture
def mock_discord_user_in_voice(
    mock_discord_context: MagicMock,
    mock_voice_channel: MagicMock,
) -> MagicMock:
    """Create a mock Discord user in a voice channel."""
    mock_discord_context.author.voice = MagicMock()
    mock_discord_context.author.voice.channel = mock_voice_channel
    return mock_discord_context


# ============================================================================
# Whisper Fixtures
# ============================================================================


@pytest.fixture
async def test_whisper_client():
    """A connected mock Whisper client."""
    from noteify.server.testing.whisper_server import MockWhisperServerClient

    client = MockWhisperServerClient()
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
async def test_server_manager(mock_context):
    """A connected server manager built for the TESTING environment."""
    from noteify.constructor import ServerManagerType
    from noteify.server.constructor import construct_server_manager

    server = construct_server_manager(ServerManagerType.TESTING, mock_context)
    await server.connect_all()
    yield server
    await server.disconnect_all()
