"""
Configuration Management

Settings are resolved from defaults, an optional JSON file and FILEDROP_*
environment variables (highest priority).
"""

import os
import json
from pathlib import Path
from dataclasses import dataclass, field
from typing import List, Optional

from dotenv import load_dotenv


ROOM_TTL = 3600.0          # Seconds a room may live, occupied or not
SWEEP_INTERVAL = 60.0      # Seconds between expiry sweeps
CHUNK_SIZE = 64 * 1024     # Max bytes per binary frame
IDLE_TIMEOUT = 30.0        # Seconds a stalled receive session is kept open
IDLE_CHECK_INTERVAL = 1.0  # Seconds between stalled-session checks

DEFAULT_ICE_SERVERS = [
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
]


@dataclass
class Settings:
    """filedrop settings shared by the server and the peers."""
    # Server
    host: str = '0.0.0.0'
    port: int = 3002

    # Rooms
    room_ttl: float = ROOM_TTL
    sweep_interval: float = SWEEP_INTERVAL

    # Transfer
    chunk_size: int = CHUNK_SIZE
    idle_timeout: float = IDLE_TIMEOUT

    # Peers
    signaling_url: str = 'ws://localhost:3002/ws'
    ice_servers: List[str] = field(default_factory=lambda: list(DEFAULT_ICE_SERVERS))

    # Logging
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls) -> 'Settings':
        """Load settings from environment variables."""
        load_dotenv()

        settings = cls()
        settings.host = os.getenv('FILEDROP_HOST', settings.host)
        settings.port = int(os.getenv('FILEDROP_PORT', settings.port))
        settings.room_ttl = float(os.getenv('FILEDROP_ROOM_TTL', settings.room_ttl))
        settings.sweep_interval = float(
            os.getenv('FILEDROP_SWEEP_INTERVAL', settings.sweep_interval)
        )
        settings.chunk_size = int(os.getenv('FILEDROP_CHUNK_SIZE', settings.chunk_size))
        settings.idle_timeout = float(
            os.getenv('FILEDROP_IDLE_TIMEOUT', settings.idle_timeout)
        )
        settings.signaling_url = os.getenv('FILEDROP_SIGNALING_URL', settings.signaling_url)

        ice = os.getenv('FILEDROP_ICE_SERVERS', '')
        if ice:
            settings.ice_servers = [url.strip() for url in ice.split(',') if url.strip()]

        settings.log_level = os.getenv('FILEDROP_LOG_LEVEL', settings.log_level)
        return settings

    @classmethod
    def from_file(cls, path: Path) -> 'Settings':
        """Load settings from a JSON file."""
        if not path.exists():
            return cls()

        with open(path) as f:
            data = json.load(f)

        settings = cls()
        for key in ('host', 'port', 'room_ttl', 'sweep_interval', 'chunk_size',
                    'idle_timeout', 'signaling_url', 'ice_servers', 'log_level'):
            if key in data:
                setattr(settings, key, data[key])
        return settings

    def to_dict(self) -> dict:
        return {
            'host': self.host,
            'port': self.port,
            'room_ttl': self.room_ttl,
            'sweep_interval': self.sweep_interval,
            'chunk_size': self.chunk_size,
            'idle_timeout': self.idle_timeout,
            'signaling_url': self.signaling_url,
            'ice_servers': list(self.ice_servers),
            'log_level': self.log_level,
        }


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """
    Load settings from file and environment.

    Environment variables override file settings.
    """
    settings = Settings()
    if config_path and config_path.exists():
        settings = Settings.from_file(config_path)

    env_settings = Settings.from_env()
    defaults = Settings()
    for key, env_val in env_settings.to_dict().items():
        if env_val != getattr(defaults, key):
            setattr(settings, key, env_val)

    return settings
