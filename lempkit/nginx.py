"""
Nginx websites: server block templates, site listing, enable/disable,
creation with automatic rollback, deletion and Certbot certificates.
"""

import logging
import re
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from lempkit import database, system
from lempkit.config import WEB_GROUP, WEB_USER, Paths
from lempkit.errors import ConfirmationError, ValidationError
from lempkit.ui import print_step, print_success, print_warning

logger = logging.getLogger(__name__)

DOMAIN_RE = re.compile(r"^(?=.{1,253}$)([A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?\.)+[A-Za-z]{2,63}$")
SITE_STATUSES = ("enabled", "disabled", "all")

STATIC_SITE_TEMPLATE = """server {{
    listen 80;
    listen [::]:80;

    server_name {domain} www.{domain};
    root {web_root};
    index index.html;

    location / {{
        try_files $uri $uri/ =404;
    }}
}}
"""

WORDPRESS_SITE_TEMPLATE = """# Redirect non-www to www
server {{
    listen 80;
    listen [::]:80;
    server_name {domain};
    return 301 https://www.{domain}$request_uri;
}}

server {{
    listen 80;
    listen [::]:80;
    server_name www.{domain};

    root {web_root};
    index index.php index.html;

    add_header X-Frame-Options "SAMEORIGIN" always;
    add_header X-Content-Type-Options "nosniff" always;
    add_header Referrer-Policy "no-referrer-when-downgrade" always;
    add_header X-XSS-Protection "1; mode=block" always;

    location / {{
        try_files $uri $uri/ /index.php?$args;
    }}

    location ~* \\.(jpg|jpeg|png|gif|ico|css|js|svg|webp)$ {{
        expires 7d;
        add_header Cache-Control "public";
    }}

    location ~ \\.php$ {{
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:{php_socket};
    }}

    location ~ /\\.ht {{
        deny all;
    }}
}}
"""

YOURLS_SITE_TEMPLATE = """server {{
    listen 80;
    listen [::]:80;
    server_name {domain};
    root {web_root};
    index index.php;

    location / {{
        try_files $uri $uri/ /yourls-loader.php$is_args$args;
    }}

    location ~ \\.php$ {{
        include snippets/fastcgi-php.conf;
        fastcgi_pass unix:{php_socket};
    }}
}}
"""

PLACEHOLDER_INDEX = """<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>Welcome to {domain}</title>
    <style>
        body {{ font-family: Arial, sans-serif; text-align: center; margin-top: 50px; background-color: #f0f0f0; color: #333; }}
        h1 {{ color: #0056b3; }}
    </style>
</head>
<body>
    <h1>Success!</h1>
    <p>The <strong>{domain}</strong> server block is working.</p>
</body>
</html>
"""


@dataclass
class NginxSite:
    name: str
    enabled: bool

    @property
    def domain(self) -> str:
        return self.name[:-5] if self.name.endswith(".conf") else self.name


def validate_site_name(name: str) -> str:
    """Site config names are plain file names inside sites-available."""
    if not name or "/" in name or name in (".", ".."):
        raise ValidationError(f"Invalid site name: '{name}'.")
    return name


def validate_domain(domain: str) -> str:
    domain = domain.strip().lower()
    if not DOMAIN_RE.match(domain):
        raise ValidationError(f"Invalid domain name: '{domain}'.")
    return domain


def php_socket_path(php_version: Optional[str]) -> str:
    if php_version:
        return f"/var/run/php/php{php_version}-fpm.sock"
    return "/var/run/php/php-fpm.sock"


def render_static_site(domain: str, web_root: Path) -> str:
    return STATIC_SITE_TEMPLATE.format(domain=domain, web_root=web_root)


def render_wordpress_site(domain: str, web_root: Path, php_socket: str) -> str:
    return WORDPRESS_SITE_TEMPLATE.format(domain=domain, web_root=web_root, php_socket=php_socket)


def render_yourls_site(domain: str, web_root: Path, php_socket: str) -> str:
    return YOURLS_SITE_TEMPLATE.format(domain=domain, web_root=web_root, php_socket=php_socket)


# ----------------------------------------------------------------
# Site Listing & Toggling
# ----------------------------------------------------------------
def list_sites(paths: Paths, status: str = "all") -> List[NginxSite]:
    if status not in SITE_STATUSES:
        raise ValueError(f"status must be one of {SITE_STATUSES}")
    if not paths.nginx_available.is_dir():
        return []
    sites = []
    for conf in sorted(paths.nginx_available.iterdir()):
        if "default" in conf.name or not conf.is_file():
            continue
        enabled = (paths.nginx_enabled / conf.name).is_symlink()
        if status == "all" or (status == "enabled") == enabled:
            sites.append(NginxSite(name=conf.name, enabled=enabled))
    return sites


def test_and_reload() -> bool:
    """Run ``nginx -t`` and reload on success."""
    if system.run_command(["nginx", "-t"], check=False).returncode != 0:
        return False
    system.run_command(["systemctl", "reload", "nginx"])
    return True


def enable_site(paths: Paths, name: str) -> None:
    validate_site_name(name)
    source = paths.site_config(name)
    link = paths.nginx_enabled / name
    if not name or not source.is_file():
        raise ValidationError(f"Site configuration '{name}' not found.")
    if link.is_symlink():
        raise ValidationError(f"Site '{name}' is already enabled.")
    paths.nginx_enabled.mkdir(parents=True, exist_ok=True)
    link.symlink_to(source)
    system.run_command(["systemctl", "reload", "nginx"])
    print_success(f"Site '{name}' has been enabled.")


def disable_site(paths: Paths, name: str) -> None:
    validate_site_name(name)
    link = paths.nginx_enabled / name
    if not name or not link.is_symlink():
        raise ValidationError(f"Site '{name}' is not enabled.")
    link.unlink()
    system.run_command(["systemctl", "reload", "nginx"])
    print_success(f"Site '{name}' has been disabled.")


def install_site_config(paths: Paths, domain: str, content: str) -> Path:
    """Write a server block, enable it and reload; roll back if nginx -t fails."""
    conf = paths.site_config(f"{domain}.conf")
    link = paths.nginx_enabled / conf.name
    paths.nginx_available.mkdir(parents=True, exist_ok=True)
    paths.nginx_enabled.mkdir(parents=True, exist_ok=True)
    conf.write_text(content)
    if link.is_symlink() or link.exists():
        link.unlink()
    link.symlink_to(conf)
    logger.info(f"Nginx configuration written to {conf}")

    if not test_and_reload():
        conf.unlink()
        if link.is_symlink():
            link.unlink()
        raise ValidationError(f"Nginx configuration test failed. Removed {conf}.")
    print_success("Nginx configuration reloaded.")
    return conf


# ----------------------------------------------------------------
# Website Lifecycle
# ----------------------------------------------------------------
def add_website(paths: Paths, domain: str) -> Path:
    """Create a web root with a placeholder page and a static server block."""
    domain = validate_domain(domain)
    web_root = paths.web_root(domain)

    print_step(f"Creating web root at {web_root}...")
    web_root.mkdir(parents=True, exist_ok=True)
    index = web_root / "index.html"
    if not index.exists():
        index.write_text(PLACEHOLDER_INDEX.format(domain=domain))
    system.chown(web_root, WEB_USER, WEB_GROUP, recursive=True)

    print_step("Configuring Nginx server block...")
    return install_site_config(paths, domain, render_static_site(domain, web_root))


def obtain_certificate(domains: List[str], email: str, package_manager: str = "apt-get") -> None:
    """Request a certificate through certbot's nginx plugin."""
    if not email:
        raise ValidationError("Email is required for Certbot.")
    if not system.command_exists("certbot"):
        print_step("Certbot not found. Installing...")
        if package_manager == "apt-get":
            system.run_command(["apt-get", "install", "-y", "certbot", "python3-certbot-nginx"])
        else:
            system.run_command([package_manager, "install", "-y", "certbot-nginx"])
    cmd = ["certbot", "--nginx", "--non-interactive", "--agree-tos", "--email", email]
    for domain in domains:
        cmd.extend(["-d", domain])
    system.run_command(cmd)
    print_success(f"SSL certificate obtained for {', '.join(domains)}.")


def delete_website(
    paths: Paths,
    name: str,
    confirmation: str,
    drop_database: Optional[str] = None,
) -> None:
    """Delete a site's config, web root, certificate and optionally its database."""
    validate_site_name(name)
    conf = paths.site_config(name)
    if not name or not conf.is_file():
        raise ValidationError("Invalid selection or config file not found.")
    domain = NginxSite(name=name, enabled=False).domain
    if confirmation != domain:
        raise ConfirmationError("Confirmation failed. Deletion cancelled.")

    # Load credentials before deleting anything.
    credentials = None
    if drop_database:
        database.validate_identifier(drop_database)
        credentials = database.load_root_password(paths.mysql_root_password_file)

    conf.unlink()
    link = paths.nginx_enabled / name
    if link.is_symlink() or link.exists():
        link.unlink()
    print_step("Nginx configuration removed.")

    web_root = paths.web_root(domain)
    if web_root.is_dir():
        shutil.rmtree(web_root)
        print_step(f"Web root directory {web_root} removed.")

    if system.command_exists("certbot"):
        result = system.run_command(
            ["certbot", "delete", "--non-interactive", "--cert-name", domain], check=False
        )
        if result.returncode != 0:
            print_warning(f"Could not delete SSL certificate for {domain}. It may not exist.")

    if drop_database:
        database.drop_database(drop_database, credentials)
        print_step(f"Database '{drop_database}' deleted.")

    system.run_command(["systemctl", "reload", "nginx"])
    print_success(f"Website '{domain}' has been completely deleted.")
