#!/usr/bin/env python3
"""
Docker image update notifier

Watches the images of the running containers on a Docker host, looks up
newer release tags in their registries and sends a notification when one
appears.  Containers are never touched.
"""

__version__ = "1.0.0"

import argparse
import copy
import fnmatch
import json
import logging
import os
import signal
import sys
import threading
import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import jsonschema

from checker import AllChecksFailedError, UpdateChecker
from concurrency import CancellationError, Context, RateLimiter
from docker_api import ContainerInfo, DockerAPIError, DockerClient
from image_ref import ImageReference, ParseError, parse_image_reference
from notify import HealthReport, ImageUpdate, NotificationError, NotificationManager, build_channels
from registry import RegistryClient, RegistryCredentials, RegistryError
from scheduler import InvalidScheduleError, Scheduler, SchedulerHealthError, parse_cadence, parse_duration
from versions import LATEST_TAG, VersionFilterConfig
from webui import create_app, serve

# Apply TZ from environment (default UTC) before any logging is configured
os.environ.setdefault('TZ', 'UTC')
if hasattr(time, 'tzset'):
    time.tzset()

logger = logging.getLogger('dnotify')

IMAGE_CHECK_TASK = "image-check"
HEALTH_CHECK_TASK = "health-check"
ENABLE_LABEL = "docker-notify.enable"
MAX_HISTORY_ENTRIES = 500

LOG_FORMAT = '%(asctime)s - [%(name)s] - %(levelname)s - %(message)s'
LOG_DATEFMT = '%Y-%m-%d %H:%M:%S %Z'
LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}

_STRING_LIST = {"type": "array", "items": {"type": "string"}}
_HEADERS = {"type": "object", "additionalProperties": {"type": "string"}}

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "app": {
            "type": "object",
            "properties": {
                "check_interval": {"type": "string"},
                "schedule": {"type": ["string", "null"]},
                "health_check_interval": {"type": "string"},
                "max_concurrency": {"type": "integer", "minimum": 1},
                "registry_timeout": {"type": "string"},
                "run_timeout": {"type": "string"},
            }
        },
        "docker": {
            "type": "object",
            "properties": {
                "socket_path": {"type": "string"},
                "filters": {
                    "type": "object",
                    "properties": {
                        "include": _STRING_LIST,
                        "exclude": _STRING_LIST,
                        "check_latest": {"type": "boolean"},
                        "check_private": {"type": "boolean"},
                        "version_filters": {
                            "type": "object",
                            "properties": {
                                "exclude_prerelease": {"type": "boolean"},
                                "exclude_windows": {"type": "boolean"},
                                "only_stable": {"type": "boolean"},
                                "exclude_patterns": _STRING_LIST,
                            }
                        }
                    }
                }
            }
        },
        "registry": {
            "type": "object",
            "properties": {
                "rate_limit": {
                    "type": "object",
                    "properties": {
                        "requests_per_minute": {"type": "number", "exclusiveMinimum": 0},
                        "burst": {"type": "integer", "minimum": 1},
                    }
                },
                "registries": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "host": {"type": "string"},
                            "username": {"type": "string"},
                            "password": {"type": "string"},
                            "insecure": {"type": "boolean"},
                        },
                        "required": ["host"]
                    }
                }
            }
        },
        "notifications": {
            "type": "object",
            "properties": {
                "channels": {
                    "type": "array",
                    "items": {"type": "string", "enum": ["email", "telegram", "ntfy", "webhook"]}
                },
                "email": {
                    "type": "object",
                    "properties": {
                        "smtp_host": {"type": "string"},
                        "smtp_port": {"type": "integer"},
                        "username": {"type": "string"},
                        "password": {"type": "string"},
                        "use_tls": {"type": "boolean"},
                        "from": {"type": "string"},
                        "to": _STRING_LIST,
                        "subject_prefix": {"type": ["string", "null"]},
                    }
                },
                "telegram": {
                    "type": "object",
                    "properties": {
                        "bot_token": {"type": "string"},
                        "chat_ids": {"type": "array", "items": {"type": "integer"}},
                    }
                },
                "ntfy": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "priority": {
                            "type": ["string", "null"],
                            "enum": ["min", "low", "default", "high", "urgent", None]
                        },
                        "headers": _HEADERS,
                    }
                },
                "webhook": {
                    "type": "object",
                    "properties": {
                        "url": {"type": "string"},
                        "method": {"type": "string"},
                        "headers": _HEADERS,
                        "body_template": {"type": ["string", "null"]},
                    }
                },
                "behavior": {
                    "type": "object",
                    "properties": {
                        "once_per_update": {"type": "boolean"},
                        "cooldown_period": {"type": "string"},
                        "group_updates": {"type": "boolean"},
                        "max_updates_per_notification": {"type": "integer", "minimum": 1},
                    }
                }
            }
        },
        "logging": {
            "type": "object",
            "properties": {
                "level": {"type": "string"},
                "format": {"type": "string", "enum": ["text", "json"]},
                "file": {"type": ["string", "null"]},
            }
        },
        "web": {
            "type": "object",
            "properties": {
                "enabled": {"type": "boolean"},
                "host": {"type": "string"},
                "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                "username": {"type": ["string", "null"]},
                "password": {"type": ["string", "null"]},
            }
        }
    }
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "app": {
        "check_interval": "30m",
        "schedule": None,
        "health_check_interval": "5m",
        "max_concurrency": 10,
        "registry_timeout": "30s",
        "run_timeout": "30m",
    },
    "docker": {
        "socket_path": "/var/run/docker.sock",
        "filters": {
            "include": [],
            "exclude": [],
            "check_latest": False,
            "check_private": True,
            "version_filters": {
                "exclude_prerelease": True,
                "exclude_windows": True,
                "only_stable": True,
                "exclude_patterns": [],
            },
        },
    },
    "registry": {
        "rate_limit": {"requests_per_minute": 100, "burst": 10},
        "registries": [],
    },
    "notifications": {
        "channels": [],
        "email": {"smtp_port": 587, "use_tls": True, "to": []},
        "telegram": {"chat_ids": []},
        "ntfy": {},
        "webhook": {"method": "POST"},
        "behavior": {
            "once_per_update": True,
            "cooldown_period": "24h",
            "group_updates": True,
            "max_updates_per_notification": 10,
        },
    },
    "logging": {"level": "info", "format": "text", "file": None},
    "web": {"enabled": False, "host": "0.0.0.0", "port": 8080, "username": None, "password": None},
}

# (env var, config path)
ENV_OVERRIDES = [
    ('CHECK_INTERVAL', ('app', 'check_interval')),
    ('DOCKER_SOCKET', ('docker', 'socket_path')),
    ('LOG_LEVEL', ('logging', 'level')),
    ('SMTP_HOST', ('notifications', 'email', 'smtp_host')),
    ('SMTP_USERNAME', ('notifications', 'email', 'username')),
    ('SMTP_PASSWORD', ('notifications', 'email', 'password')),
    ('EMAIL_FROM', ('notifications', 'email', 'from')),
    ('EMAIL_TO', ('notifications', 'email', 'to')),
    ('TELEGRAM_BOT_TOKEN', ('notifications', 'telegram', 'bot_token')),
    ('NTFY_URL', ('notifications', 'ntfy', 'url')),
    ('WEBUI_USER', ('web', 'username')),
    ('WEBUI_PASSWORD', ('web', 'password')),
]


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""


# ── Configuration ─────────────────────────────────────────────────

def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(config: Dict[str, Any], environ=None) -> None:
    environ = os.environ if environ is None else environ
    for var, path in ENV_OVERRIDES:
        value = environ.get(var)
        if not value:
            continue
        if var == 'EMAIL_TO':
            value = [addr.strip() for addr in value.split(',') if addr.strip()]
        section = config
        for key in path[:-1]:
            section = section.setdefault(key, {})
        section[path[-1]] = value


def validate_config(config: Dict[str, Any]) -> None:
    """Checks the schema can't express: durations, schedule, log level, channel settings."""
    app = config['app']
    durations = [
        ('app.check_interval', app['check_interval']),
        ('app.health_check_interval', app['health_check_interval']),
        ('app.registry_timeout', app['registry_timeout']),
        ('app.run_timeout', app['run_timeout']),
        ('notifications.behavior.cooldown_period',
         config['notifications']['behavior']['cooldown_period']),
    ]
    for name, value in durations:
        try:
            seconds = parse_duration(value)
        except ValueError as e:
            raise ConfigError(f"invalid {name}: {e}") from e
        if seconds <= 0 and name != 'notifications.behavior.cooldown_period':
            raise ConfigError(f"invalid {name}: must be positive")

    if app.get('schedule'):
        try:
            parse_cadence(app['schedule'])
        except InvalidScheduleError as e:
            raise ConfigError(f"invalid app.schedule: {e}") from e

    if str(config['logging']['level']).lower() not in LOG_LEVELS:
        raise ConfigError(f"invalid log level: {config['logging']['level']}")

    try:
        build_channels(config['notifications'])
    except ValueError as e:
        raise ConfigError(f"invalid notification settings: {e}") from e


def load_config(config_file: Optional[str], environ=None) -> Dict[str, Any]:
    """
    Load, merge and validate the configuration.

    A missing file is not an error: defaults plus environment overrides are
    used.

    Raises:
        ConfigError: Unparsable file, schema violation or invalid value
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_file:
        try:
            with open(config_file, 'r') as f:
                user_config = json.load(f)
        except FileNotFoundError:
            logger.warning(f"Config file {config_file} not found, using defaults")
        except json.JSONDecodeError as e:
            raise ConfigError(f"Error parsing config file {config_file}: {e}") from e
        else:
            try:
                jsonschema.validate(user_config, CONFIG_SCHEMA)
            except jsonschema.ValidationError as e:
                raise ConfigError(f"Configuration validation failed: {e.message}") from e
            config = _deep_merge(config, user_config)

    apply_env_overrides(config, environ)
    validate_config(config)
    return config


# ── Logging ───────────────────────────────────────────────────────

class JSONFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            'time': self.formatTime(record, '%Y-%m-%dT%H:%M:%S%z'),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            entry['error'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def setup_logging(level: str = 'info', fmt: str = 'text', file: Optional[str] = None) -> logging.Logger:
    """Setup logging configuration on the root logger."""
    root = logging.getLogger()
    root.setLevel(LOG_LEVELS.get(level.lower(), logging.INFO))
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.FileHandler(file) if file else logging.StreamHandler()
    if fmt == 'json':
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT))
    root.addHandler(handler)
    return logger


# ── Service ───────────────────────────────────────────────────────

def _matches(patterns: List[str], container: ContainerInfo, ref: ImageReference) -> bool:
    candidates = (container.image, ref.full_name, f"{ref.repository}:{ref.tag}", container.name)
    return any(fnmatch.fnmatch(c, p) for p in patterns for c in candidates)


class DockerNotify:
    """Wires discovery, checking, scheduling and notification together."""

    def __init__(self, config: Dict[str, Any], docker: Optional[DockerClient] = None,
                 registry: Optional[RegistryClient] = None,
                 notifications: Optional[NotificationManager] = None,
                 scheduler: Optional[Scheduler] = None):
        self.config = config
        app_cfg = config['app']
        filters = config['docker']['filters']
        behavior = config['notifications']['behavior']

        socket_path = config['docker']['socket_path']
        if socket_path.startswith('unix://'):
            socket_path = socket_path[len('unix://'):]
        self.docker = docker or DockerClient(socket_path=socket_path)

        self.registry = registry or RegistryClient(
            timeout=parse_duration(app_cfg['registry_timeout']),
            credentials=[
                RegistryCredentials(
                    host=r['host'],
                    username=r.get('username'),
                    password=r.get('password'),
                    insecure=r.get('insecure', False),
                )
                for r in config['registry']['registries']
            ],
        )
        rate = config['registry']['rate_limit']
        self.rate_limiter = RateLimiter(rate['requests_per_minute'], rate['burst'])

        vf = filters['version_filters']
        self.checker = UpdateChecker(self.registry, self.rate_limiter, VersionFilterConfig(
            exclude_pre_release=vf['exclude_prerelease'],
            exclude_windows=vf['exclude_windows'],
            only_stable=vf['only_stable'],
            exclude_patterns=frozenset(vf['exclude_patterns']),
        ))

        if notifications is None:
            notifications = NotificationManager(behavior['max_updates_per_notification'])
            for channel in build_channels(config['notifications']):
                notifications.register_channel(channel)
        self.notifications = notifications

        self.scheduler = scheduler or Scheduler(run_timeout=parse_duration(app_cfg['run_timeout']))

        self.max_concurrency = app_cfg['max_concurrency']
        self.once_per_update = behavior['once_per_update']
        self.cooldown = parse_duration(behavior['cooldown_period'])
        self.group_updates = behavior['group_updates']

        self._lock = threading.Lock()
        # (registry, repository, current tag) -> (latest tag notified, monotonic time sent)
        self._notified: Dict[Tuple[str, str, str], Tuple[str, float]] = {}
        self._health: Dict[str, str] = {}
        self.started_at = datetime.now(timezone.utc)
        self.last_check: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.last_checked_count = 0
        self.last_failed_count = 0
        self.last_updates: List[ImageUpdate] = []
        self.history: deque = deque(maxlen=MAX_HISTORY_ENTRIES)

    # ── Discovery ─────────────────────────────────────────────────

    def filter_containers(self, containers: List[ContainerInfo]) -> List[Tuple[ContainerInfo, ImageReference]]:
        """Parse container images and apply the include/exclude/latest/private filters."""
        filters = self.config['docker']['filters']
        selected = []
        for container in containers:
            if container.labels.get(ENABLE_LABEL, '').lower() == 'false':
                logger.debug(f"Skipping {container.name}: disabled by label")
                continue
            if container.image.startswith('sha256:'):
                logger.debug(f"Skipping {container.name}: started from image ID {container.image[:19]}")
                continue
            try:
                ref = parse_image_reference(container.image)
            except ParseError as e:
                logger.warning(f"Failed to parse image of {container.name}: {e}")
                continue

            if filters['exclude'] and _matches(filters['exclude'], container, ref):
                logger.debug(f"Excluding image {container.image} based on filters")
                continue
            if filters['include'] and not _matches(filters['include'], container, ref):
                logger.debug(f"Image {container.image} not in include list")
                continue
            if ref.tag == LATEST_TAG and not filters['check_latest']:
                logger.debug(f"Skipping latest tag for {container.image}")
                continue
            if ref.is_private_registry() and not filters['check_private']:
                logger.debug(f"Skipping private registry image {container.image}")
                continue
            selected.append((container, ref))
        return selected

    # ── Notification de-duplication ───────────────────────────────

    def _select_new(self, updates: List[ImageUpdate]) -> List[ImageUpdate]:
        now = time.monotonic()
        pending = []
        with self._lock:
            for update in updates:
                key = (update.registry, update.repository, update.current_tag)
                previous = self._notified.get(key)
                if previous is not None:
                    latest, sent_at = previous
                    if self.once_per_update and latest == update.latest_tag:
                        logger.debug(f"Already notified about {update.repository} {update.latest_tag}")
                        continue
                    if not self.once_per_update and now - sent_at < self.cooldown:
                        logger.debug(f"Cooldown active for {update.repository}")
                        continue
                pending.append(update)
        return pending

    def _mark_notified(self, updates: List[ImageUpdate]) -> None:
        now = time.monotonic()
        with self._lock:
            for update in updates:
                self._notified[(update.registry, update.repository, update.current_tag)] = (
                    update.latest_tag, now
                )

    def _notify_updates(self, ctx: Context, updates: List[ImageUpdate]) -> None:
        pending = self._select_new(updates)
        if not pending:
            return
        if not self.notifications.registered_channels():
            logger.info(f"{len(pending)} updates found but no notification channels are configured")
            return
        self.notifications.send_image_updates(
            ctx, pending,
            batch_size=None if self.group_updates else 1,
            on_delivered=self._mark_notified,
        )
        logger.info(f"Sent notifications for {len(pending)} updates")

    # ── Tasks ─────────────────────────────────────────────────────

    def perform_image_check(self, ctx: Context) -> List[ImageUpdate]:
        """
        Check every eligible running container for image updates and notify.

        Returns:
            All updates found in this check (notified or not)

        Raises:
            DockerAPIError: Containers could not be listed
            AllChecksFailedError: No image could be checked
            NotificationError: Update notifications could not be delivered
            CancellationError: *ctx* was cancelled
        """
        start = time.monotonic()
        containers = self.docker.get_running_containers()
        logger.info(f"Retrieved {len(containers)} running containers")

        selected = self.filter_containers(containers)
        logger.info(f"{len(selected)} containers match the configured filters")

        names: Dict[Tuple[str, str, Optional[str]], List[str]] = {}
        refs: List[ImageReference] = []
        for container, ref in selected:
            key = (ref.registry, ref.repository, ref.tag)
            if key not in names:
                names[key] = []
                refs.append(ref)
            names[key].append(container.name)

        updates: List[ImageUpdate] = []
        failed = 0
        if refs:
            result = self.checker.check_many(ctx, refs, self.max_concurrency)
            failed = len(result.failed)
            for verdict in result.updates:
                key = (verdict.registry, verdict.repository, verdict.current_tag)
                updates.append(ImageUpdate.from_verdict(verdict, names.get(key, [])))

        with self._lock:
            self.last_check = datetime.now(timezone.utc)
            self.last_checked_count = len(refs)
            self.last_failed_count = failed
            self.last_updates = updates
            self.last_error = None
            self.history.extend(updates)

        logger.info(
            f"Completed image check in {time.monotonic() - start:.2f}s: "
            f"{len(refs)} images, {len(updates)} updates, {failed} failed"
        )
        self._notify_updates(ctx, updates)
        return updates

    def _image_check_task(self, ctx: Context) -> None:
        try:
            self.perform_image_check(ctx)
        except (DockerAPIError, AllChecksFailedError) as e:
            with self._lock:
                self.last_error = str(e)
            self._report_error(ctx, "image check", e)
            raise
        except (NotificationError, CancellationError) as e:
            with self._lock:
                self.last_error = str(e)
            raise

    def _report_error(self, ctx: Context, context: str, error: Exception) -> None:
        if not self.notifications.registered_channels():
            return
        try:
            self.notifications.send_error(ctx, context, error)
        except NotificationError as e:
            logger.warning(f"Could not send error notification: {e}")

    def perform_health_check(self, ctx: Context) -> Dict[str, str]:
        """Probe Docker, the registry and the scheduler; alert on status changes."""
        statuses: Dict[str, str] = {}
        details: Dict[str, str] = {}

        def _probe(component: str, probe, errors) -> None:
            try:
                probe()
                statuses[component] = 'healthy'
            except errors as e:
                statuses[component] = 'unhealthy'
                details[component] = str(e)

        _probe('docker', self.docker.ping, DockerAPIError)
        _probe('registry', lambda: self.registry.health(ctx), RegistryError)
        _probe('scheduler', self.scheduler.health, SchedulerHealthError)

        changed = []
        with self._lock:
            for component, status in statuses.items():
                previous = self._health.get(component)
                self._health[component] = status
                if previous != status and (previous is not None or status == 'unhealthy'):
                    changed.append(component)

        for component in changed:
            status = statuses[component]
            log = logger.warning if status == 'unhealthy' else logger.info
            log(f"Component {component} is {status}")
            if self.notifications.registered_channels():
                try:
                    self.notifications.send_health_alert(ctx, component, status, details.get(component, ''))
                except NotificationError as e:
                    logger.warning(f"Could not send health alert: {e}")
        return statuses

    def setup_scheduled_tasks(self) -> None:
        app_cfg = self.config['app']
        schedule = app_cfg.get('schedule') or f"@every {app_cfg['check_interval']}"
        self.scheduler.add_task(IMAGE_CHECK_TASK, "Docker Image Update Check", schedule,
                                self._image_check_task)
        self.scheduler.add_task(HEALTH_CHECK_TASK, "Service Health Check",
                                f"@every {app_cfg['health_check_interval']}",
                                self.perform_health_check)

    # ── Status ────────────────────────────────────────────────────

    def status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'version': __version__,
                'started_at': self.started_at.isoformat(),
                'last_check': self.last_check.isoformat() if self.last_check else None,
                'last_error': self.last_error,
                'checked_images': self.last_checked_count,
                'failed_images': self.last_failed_count,
                'updates_found': len(self.last_updates),
                'scheduler_running': self.scheduler.is_running,
                'channels': self.notifications.enabled_channels(),
                'components': dict(self._health),
            }

    def health(self) -> Tuple[bool, Dict[str, Any]]:
        """Overall health for the status API: scheduler health plus last probe results."""
        report: Dict[str, Any] = {}
        healthy = True
        try:
            self.scheduler.health()
            report['scheduler'] = 'healthy'
        except SchedulerHealthError as e:
            healthy = False
            report['scheduler'] = f"unhealthy: {e}"
        with self._lock:
            for component, status in self._health.items():
                report.setdefault(component, status)
                if status != 'healthy':
                    healthy = False
        return healthy, report

    def updates(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'last_check': self.last_check.isoformat() if self.last_check else None,
                'updates': [u.to_dict() for u in self.last_updates],
                'history': [u.to_dict() for u in self.history],
            }

    # ── Run modes ─────────────────────────────────────────────────

    def run_check_once(self) -> List[ImageUpdate]:
        logger.info("Running single image check")
        ctx = Context(timeout=self.scheduler.run_timeout)
        return self.perform_image_check(ctx)

    def run_test_mode(self) -> None:
        """Check Docker, the registry and every notification channel, then return."""
        logger.info("Running in test mode")
        ctx = Context(timeout=self.scheduler.run_timeout)

        self.docker.ping()
        logger.info("Docker connection test passed")

        self.registry.health(ctx)
        logger.info("Registry connection test passed")

        self.notifications.send(ctx, HealthReport(
            component="docker-notify",
            status="test",
            details="This is a test notification from Docker Notify.",
        ))
        logger.info("Notification test passed")

    def run(self) -> None:
        """Daemon mode: schedule the tasks and block until SIGINT/SIGTERM.

        Raises:
            DockerAPIError: Docker is unreachable at startup
        """
        self.docker.ping()
        logger.info("Connected to Docker")

        stop_event = threading.Event()

        def _handle_signal(signum, frame):
            logger.info(f"Received signal {signum}, stopping service")
            stop_event.set()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)

        self.setup_scheduled_tasks()
        self.scheduler.start()

        server = None
        web_cfg = self.config['web']
        if web_cfg['enabled']:
            server = serve(create_app(self), web_cfg['host'], web_cfg['port'])

        logger.info("Docker Notify service is running")
        stop_event.wait()

        if server is not None:
            server.shutdown()
        self.scheduler.stop()
        logger.info("Service stopped successfully")

    def close(self) -> None:
        self.registry.session.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description='Docker image update notifier'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE', 'config.json'),
        help='Path to configuration JSON file (env: CONFIG_FILE, default: config.json)'
    )
    parser.add_argument(
        '--log-level',
        type=str.lower,
        choices=sorted(LOG_LEVELS),
        help='Logging level, overrides config and LOG_LEVEL'
    )
    parser.add_argument(
        '--check-once',
        action='store_true',
        default=os.environ.get('CHECK_ONCE', '').lower() == 'true',
        help='Run the image check once and exit (env: CHECK_ONCE)'
    )
    parser.add_argument(
        '--test',
        action='store_true',
        help='Test Docker, registry and notification connectivity, then exit'
    )
    parser.add_argument(
        '--version',
        action='version',
        version=f'%(prog)s {__version__}'
    )

    args = parser.parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.error(f"Fatal error: {e}")
        return 1

    if args.log_level:
        config['logging']['level'] = args.log_level
    log_cfg = config['logging']
    setup_logging(log_cfg['level'], log_cfg['format'], log_cfg['file'])
    logger.info(f"Starting docker-notify {__version__} (config: {args.config})")

    service = DockerNotify(config)
    try:
        if args.test:
            service.run_test_mode()
            logger.info("Test mode completed successfully")
        elif args.check_once:
            service.run_check_once()
            logger.info("Single check completed successfully")
        else:
            service.run()
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return 1
    finally:
        service.close()
    return 0


if __name__ == '__main__':
    sys.exit(main())
