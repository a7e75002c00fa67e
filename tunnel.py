"""
Public tunnel supervision.
Starts cloudflared or localtunnel next to the server so the registration
QR code can be opened from phones that are not on the local network.
"""

import re
import enum
import shutil
import logging
import threading
import subprocess
from concurrent.futures import Future
from datetime import datetime, timedelta

import requests
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger(__name__)

TUNNEL_URL_TIMEOUT = 10  # seconds
LOCALTUNNEL_PASSWORD_URL = 'https://loca.lt/mytunnelpassword'


def should_start_tunnel(public_flag, environment):
    """Tunnels are opt-in and never used on a hosted production deployment."""
    return str(public_flag).lower() in ('true', '1') and environment != 'production'


class TunnelUnavailable(Exception):
    """The tunnel binary is missing or exited before publishing a URL."""


class TunnelState(enum.Enum):
    IDLE = 'idle'
    STARTING = 'starting'
    ACTIVE = 'active'
    CLOSED = 'closed'

# =============================================================================
# Backends
# =============================================================================
class ProcessTunnel:
    """
    Runs a tunnel binary and watches its output.

    `url` resolves once with the first public URL the process prints, or
    fails with TunnelUnavailable if the process exits first. `closed`
    resolves with the exit code when the process ends.
    """
    binary = None
    url_pattern = None
    install_hint = ''

    def __init__(self, port, subdomain=None, popen=subprocess.Popen, which=shutil.which):
        self.port = port
        self.subdomain = subdomain
        self.url = Future()
        self.closed = Future()
        self._popen = popen
        self._which = which
        self._process = None

    def command(self):
        raise NotImplementedError

    def open(self):
        """Spawn the tunnel process and start watching its output."""
        if self._which(self.binary) is None:
            raise TunnelUnavailable(f'{self.binary} is not installed')
        self._process = self._popen(
            self.command(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            errors='replace',
            bufsize=1,
        )
        watcher = threading.Thread(target=self.watch, name=f'{self.binary}-output', daemon=True)
        watcher.start()

    def watch(self):
        """Read process output until it exits."""
        try:
            for line in self._process.stdout:
                if self.url.done():
                    continue
                match = self.url_pattern.search(line)
                if match:
                    self.url.set_result(match.group(0))
        except (OSError, ValueError) as exc:
            logger.error('Stopped reading %s output: %s', self.binary, exc)
            self.close()
        finally:
            returncode = self._process.wait()
            if not self.url.done():
                self.url.set_exception(
                    TunnelUnavailable(f'{self.binary} exited with code {returncode} before publishing a URL')
                )
            self.closed.set_result(returncode)

    def on_active(self, url):
        """Hook run once the public URL is known."""

    def close(self):
        if self._process is not None and self._process.poll() is None:
            self._process.terminate()


class CloudflaredTunnel(ProcessTunnel):
    binary = 'cloudflared'
    # cloudflared prints its banner, including the quick tunnel URL, on stderr
    url_pattern = re.compile(r'https://[a-z0-9-]+\.trycloudflare\.com')
    install_hint = 'Install it with: brew install cloudflared (or use TUNNEL_TYPE=localtunnel)'

    def command(self):
        return ['cloudflared', 'tunnel', '--url', f'http://localhost:{self.port}']


class LocaltunnelTunnel(ProcessTunnel):
    binary = 'lt'
    url_pattern = re.compile(r'https://[a-z0-9-]+\.loca\.lt')
    install_hint = 'Install it with: npm install -g localtunnel (or use TUNNEL_TYPE=cloudflared)'

    def command(self):
        command = ['lt', '--port', str(self.port)]
        if self.subdomain:
            command += ['--subdomain', self.subdomain]
        return command

    def on_active(self, url):
        """Log the password localtunnel asks visitors for."""
        logger.warning('Localtunnel shows a password page to every new visitor')
        try:
            response = requests.get(LOCALTUNNEL_PASSWORD_URL, timeout=5)
            response.raise_for_status()
        except requests.RequestException as exc:
            logger.warning('Could not fetch the tunnel password (%s), see %s',
                           exc, LOCALTUNNEL_PASSWORD_URL)
            return
        logger.info('Tunnel password for guests: %s', response.text.strip())


BACKENDS = {
    'cloudflared': CloudflaredTunnel,
    'localtunnel': LocaltunnelTunnel,
}

# =============================================================================
# Supervisor
# =============================================================================
class TunnelSupervisor:
    """Owns the tunnel process and the public URL it exposes."""

    def __init__(self, port, backend='cloudflared', subdomain=None,
                 timeout=TUNNEL_URL_TIMEOUT, scheduler=None, backends=None):
        self.port = port
        self.backend = backend
        self.subdomain = subdomain
        self.timeout = timeout
        self._backends = BACKENDS if backends is None else backends
        self._scheduler = scheduler
        self._owns_scheduler = scheduler is None
        self._lock = threading.Lock()
        self._state = TunnelState.IDLE
        self._public_url = None
        self._tunnel = None

    @property
    def state(self):
        return self._state

    @property
    def public_url(self):
        """The captured tunnel URL, or None when no tunnel is active."""
        return self._public_url

    def start(self):
        """Launch the tunnel. Returns False when it could not be started."""
        tunnel_cls = self._backends.get(self.backend)
        if tunnel_cls is None:
            logger.error('Unknown tunnel type %r, expected one of: %s',
                         self.backend, ', '.join(sorted(self._backends)))
            return False

        tunnel = tunnel_cls(self.port, subdomain=self.subdomain)
        logger.info('Creating a public URL with %s (this can take a few seconds)', self.backend)
        with self._lock:
            self._state = TunnelState.STARTING
        try:
            tunnel.open()
        except (TunnelUnavailable, OSError) as exc:
            with self._lock:
                self._state = TunnelState.IDLE
            logger.error('Could not start the tunnel: %s', exc)
            if tunnel.install_hint:
                logger.info(tunnel.install_hint)
            logger.info('Continuing with local access only')
            return False

        self._tunnel = tunnel
        tunnel.url.add_done_callback(self._on_url)
        tunnel.closed.add_done_callback(self._on_closed)
        self._schedule_timeout()
        return True

    def _schedule_timeout(self):
        if self._scheduler is None:
            self._scheduler = BackgroundScheduler(daemon=True)
        if self._owns_scheduler and not self._scheduler.running:
            self._scheduler.start()
        self._scheduler.add_job(
            self.check_timeout,
            'date',
            run_date=datetime.now() + timedelta(seconds=self.timeout),
        )

    def check_timeout(self):
        """Warn when no URL showed up in time. The process keeps running."""
        if self._state is not TunnelState.STARTING:
            return
        command = ' '.join(self._tunnel.command()) if self._tunnel else self.backend
        logger.warning('No public URL from %s after %s seconds', self.backend, self.timeout)
        logger.warning('Check the output above or run it manually: %s', command)

    def _on_url(self, future):
        if future.cancelled() or future.exception() is not None:
            return
        url = future.result()
        with self._lock:
            if self._state is not TunnelState.STARTING:
                return
            self._public_url = url
            self._state = TunnelState.ACTIVE
        logger.info('Public URL created: %s', url)
        logger.info('Registration: %s/register', url)
        self._tunnel.on_active(url)

    def _on_closed(self, future):
        returncode = future.result()
        with self._lock:
            self._state = TunnelState.CLOSED
            self._public_url = None
        logger.warning('Tunnel closed (exit code %s), QR codes fall back to the local URL', returncode)

    def stop(self):
        """Terminate the tunnel process and the timeout scheduler."""
        if self._tunnel is not None:
            self._tunnel.close()
        if self._owns_scheduler and self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
