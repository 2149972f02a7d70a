"""
Host bootstrap script for the WebSocket API instance.

The script runs once as EC2 user data and prepares the host:
  1. package updates + awscli / nginx / SSM agent
  2. .NET runtime (verified before anything else is configured)
  3. application directory owned by the service user
  4. systemd unit for the service
  5. nginx reverse proxy with default, WebSocket and health routes

Each step is a separate render function so the generated text can be
checked in isolation.  The service binary itself is never deployed here;
the deployment pipeline drops it into APP_DIR and restarts the unit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from websocket_infra.config import (
    APP_BINARY,
    APP_DIR,
    APP_PORT,
    APP_USER,
    BOOTSTRAP_LOG_PATH,
    HTTP_PORT,
    LISTEN_URL,
    RUNTIME_CHANNEL,
    RUNTIME_INSTALL_DIR,
    SERVICE_NAME,
    EnvironmentSettings,
)

SHEBANG = "#!/bin/bash"

SITES_ENABLED_DIR = "/etc/nginx/sites-enabled/"

RESTART_POLICY = "always"
RESTART_DELAY_SECONDS = 10

LONG_LIVED_READ_TIMEOUT = "86400"  # one day; idle WebSocket connections survive


@dataclass(frozen=True)
class BootstrapContext:
    service_name: str
    runtime_mode: str
    app_dir: str = APP_DIR
    app_binary: str = APP_BINARY
    app_user: str = APP_USER
    app_port: int = APP_PORT
    listen_url: str = LISTEN_URL
    proxy_port: int = HTTP_PORT
    log_path: str = BOOTSTRAP_LOG_PATH
    runtime_channel: str = RUNTIME_CHANNEL
    runtime_install_dir: str = RUNTIME_INSTALL_DIR
    installer_path: str = "/tmp/dotnet-install.sh"

    @classmethod
    def for_settings(cls, settings: EnvironmentSettings) -> "BootstrapContext":
        return cls(service_name=SERVICE_NAME, runtime_mode=settings.runtime_mode)


@dataclass(frozen=True)
class ProxyRoute:
    path: str
    upstream_path: str = ""
    upgrade: bool = False
    forwarded_headers: bool = False
    cache_bypass: bool = False
    read_timeout: Optional[str] = None
    connect_timeout: Optional[str] = None
    access_log: bool = True


DEFAULT_ROUTE = ProxyRoute(
    path="/",
    upgrade=True,
    forwarded_headers=True,
    cache_bypass=True,
    read_timeout="300s",
    connect_timeout="75s",
)
LONG_LIVED_ROUTE = ProxyRoute(
    path="/ws",
    upstream_path="/ws",
    upgrade=True,
    forwarded_headers=True,
    read_timeout=LONG_LIVED_READ_TIMEOUT,
)
HEALTH_ROUTE = ProxyRoute(path="/health", upstream_path="/health", access_log=False)

PROXY_ROUTES = (DEFAULT_ROUTE, LONG_LIVED_ROUTE, HEALTH_ROUTE)


def _heredoc(path: str, body: Sequence[str]) -> List[str]:
    # quoted delimiter: nginx/systemd variables must reach the file untouched
    return [f"cat > {path} <<'EOF'", *body, "EOF"]


# ---------------------------------------------------------------
# Steps
# ---------------------------------------------------------------

def render_preamble(ctx: BootstrapContext) -> List[str]:
    return [
        "set -euo pipefail",
        f"exec > >(tee -a {ctx.log_path})",
        "exec 2>&1",
        "trap 'echo \"Bootstrap failed at line $LINENO (exit $?) at $(date)\"' ERR",
        "",
        'echo "Starting WebSocket API setup at $(date)"',
    ]


def render_package_install(ctx: BootstrapContext) -> List[str]:
    return [
        "# Update system",
        "export DEBIAN_FRONTEND=noninteractive",
        "apt-get update -y",
        "apt-get upgrade -y",
        "",
        "# Install dependencies",
        "apt-get install -y awscli unzip nginx curl",
        "",
        "# Session Manager agent (no SSH)",
        "snap install amazon-ssm-agent --classic",
        "systemctl enable --now snap.amazon-ssm-agent.amazon-ssm-agent.service",
    ]


def render_runtime_install(ctx: BootstrapContext) -> List[str]:
    return [
        f"# Install .NET {ctx.runtime_channel.split('.')[0]} Runtime",
        f"wget https://dot.net/v1/dotnet-install.sh -O {ctx.installer_path}",
        f"chmod +x {ctx.installer_path}",
        f"{ctx.installer_path} --channel {ctx.runtime_channel} "
        f"--install-dir {ctx.runtime_install_dir}",
        f"ln -sf {ctx.runtime_install_dir}/dotnet /usr/bin/dotnet",
        "",
        "# Verify .NET installation",
        "dotnet --version",
    ]


def render_app_directory(ctx: BootstrapContext) -> List[str]:
    return [
        "# Create application directory",
        f"mkdir -p {ctx.app_dir}",
        f"chown -R {ctx.app_user}:{ctx.app_user} {ctx.app_dir}",
    ]


def supervision_unit(ctx: BootstrapContext) -> List[str]:
    """Lines of the systemd unit that keeps the service running."""
    return [
        "[Unit]",
        "Description=WebSocket API .NET Application",
        "After=network.target",
        "",
        "[Service]",
        "Type=notify",
        f"WorkingDirectory={ctx.app_dir}",
        f"ExecStart=/usr/bin/dotnet {ctx.app_binary}",
        f"Restart={RESTART_POLICY}",
        f"RestartSec={RESTART_DELAY_SECONDS}",
        "KillSignal=SIGINT",
        f"SyslogIdentifier={ctx.service_name}",
        f"User={ctx.app_user}",
        f"Environment=ASPNETCORE_ENVIRONMENT={ctx.runtime_mode}",
        f"Environment=ASPNETCORE_URLS={ctx.listen_url}",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
    ]


def render_supervision_unit(ctx: BootstrapContext) -> List[str]:
    return [
        "# Create systemd service",
        *_heredoc(f"/etc/systemd/system/{ctx.service_name}.service", supervision_unit(ctx)),
        "",
        "systemctl daemon-reload",
        f"systemctl enable {ctx.service_name}",
    ]


def render_location(route: ProxyRoute, upstream: str) -> List[str]:
    body = [f"proxy_pass http://{upstream}{route.upstream_path};"]
    if route.upgrade:
        body += [
            "proxy_http_version 1.1;",
            "proxy_set_header Upgrade $http_upgrade;",
            'proxy_set_header Connection "upgrade";',
        ]
    if route.forwarded_headers:
        body += [
            "proxy_set_header Host $host;",
            "proxy_set_header X-Real-IP $remote_addr;",
            "proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;",
            "proxy_set_header X-Forwarded-Proto $scheme;",
        ]
    if route.cache_bypass:
        body.append("proxy_cache_bypass $http_upgrade;")
    if route.read_timeout:
        body.append(f"proxy_read_timeout {route.read_timeout};")
    if route.connect_timeout:
        body.append(f"proxy_connect_timeout {route.connect_timeout};")
    if not route.access_log:
        body.append("access_log off;")

    return [f"    location {route.path} {{", *(f"        {line}" for line in body), "    }"]


def proxy_site(ctx: BootstrapContext, routes: Sequence[ProxyRoute] = PROXY_ROUTES) -> List[str]:
    """Lines of the nginx site that fronts the service."""
    lines = [
        f"upstream {ctx.service_name} {{",
        f"    server 127.0.0.1:{ctx.app_port};",
        "}",
        "",
        "server {",
        f"    listen {ctx.proxy_port} default_server;",
        "    server_name _;",
    ]
    for route in routes:
        lines.append("")
        lines.extend(render_location(route, ctx.service_name))
    lines.append("}")
    return lines


def render_proxy_config(ctx: BootstrapContext) -> List[str]:
    site = f"/etc/nginx/sites-available/{ctx.service_name}"
    return [
        "# Configure Nginx as reverse proxy",
        *_heredoc(site, proxy_site(ctx)),
        "",
        f"ln -sf {site} {SITES_ENABLED_DIR}",
        f"rm -f {SITES_ENABLED_DIR}default",
    ]


def render_proxy_activation(ctx: BootstrapContext) -> List[str]:
    return [
        "nginx -t",
        "systemctl restart nginx",
        "",
        'echo "WebSocket API setup completed at $(date)"',
    ]


Step = Callable[[BootstrapContext], List[str]]

DEFAULT_STEPS: Sequence[Step] = (
    render_preamble,
    render_package_install,
    render_runtime_install,
    render_app_directory,
    render_supervision_unit,
    render_proxy_config,
    render_proxy_activation,
)


class BootstrapScriptGenerator:
    """Compose the render steps into one fail-fast shell script."""

    def __init__(self, ctx: BootstrapContext, steps: Sequence[Step] = DEFAULT_STEPS):
        self.ctx = ctx
        self.steps = tuple(steps)

    @classmethod
    def for_settings(cls, settings: EnvironmentSettings) -> "BootstrapScriptGenerator":
        return cls(BootstrapContext.for_settings(settings))

    def commands(self) -> List[str]:
        """Script lines without the shebang (CDK user data adds its own)."""
        out: List[str] = []
        for i, step in enumerate(self.steps):
            if i:
                out.append("")
            out.extend(step(self.ctx))
        return out

    def render(self) -> str:
        return "\n".join([SHEBANG, *self.commands()]) + "\n"
