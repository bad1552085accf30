#!/usr/bin/env python3
"""
Let's Encrypt for Vesta - issue and install certificates for hosted sites
Purpose: Request one certificate per run covering every requested site and alias,
then install it into the control panel's per-site SSL configuration.

Usage:
    letsencrypt-vesta [-m email] [-u] user1 [domain1 domain2 ...] [-u user2 [...]] ... [-a days]
"""

import os
import re
import sys
import enum
import shlex
import shutil
import logging
import tempfile
import traceback
import subprocess
from typing import Callable, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

import requests
import yaml


LOGGER_NAME = 'letsencrypt-vesta'
DEFAULT_CONFIG_FILE = '/usr/local/etc/letsencrypt-vesta.yml'

# Alias values the panel prints when a site has none
NO_VALUE_MARKERS = ('', 'none')

USAGE = """\
usage: letsencrypt-vesta [-m email] [-u] user1 [domain1 domain2 ...] [-u user2 [...]] ... [-a days]

  -u user [domain ...]  request a certificate for user's sites (all sites if no domain given)
  -m email              contact email for the certificate authority (default: first user's CONTACT)
  -a days               schedule this exact command to run again after <days> days
  -h, --help            show this help message and exit
"""


class ExitCodes:
    SUCCESS = 0
    USAGE = 1
    NO_USERS = 2
    NO_DOMAINS = 3
    ISSUANCE = 4
    SCHEDULER = 5
    CONFIG = 6
    INSTALL = 7
    NO_EMAIL = 8
    INTERRUPTED = 130


class LetsEncryptVestaError(Exception):
    """Base error; carries the process exit code"""
    exit_code = ExitCodes.USAGE


class UsageError(LetsEncryptVestaError):
    exit_code = ExitCodes.USAGE


class ConfigError(LetsEncryptVestaError):
    exit_code = ExitCodes.CONFIG


# Raised per item during aggregation and recovered from with a warning
class InvalidAccount(LetsEncryptVestaError):
    pass


class InvalidDomain(LetsEncryptVestaError):
    pass


class NoValidUsers(LetsEncryptVestaError):
    exit_code = ExitCodes.NO_USERS


class NoValidDomains(LetsEncryptVestaError):
    exit_code = ExitCodes.NO_DOMAINS


class NoContactEmail(LetsEncryptVestaError):
    exit_code = ExitCodes.NO_EMAIL


class IssuanceFailure(LetsEncryptVestaError):
    exit_code = ExitCodes.ISSUANCE


class SchedulerUnavailable(LetsEncryptVestaError):
    exit_code = ExitCodes.SCHEDULER


@dataclass
class Config:
    """Configuration data structure"""
    panel_bin_dir: str = "/usr/local/vesta/bin"
    certbot_command: str = "certbot"
    webroot: str = "/etc/letsencrypt/webroot"
    live_dir: str = "/etc/letsencrypt/live"
    staging: bool = False
    certbot_extra_args: List[str] = field(default_factory=list)
    services: List[str] = field(default_factory=lambda: ["nginx", "apache2", "httpd"])
    scheduler_command: str = "at"
    verify_https: bool = False
    verify_timeout: int = 30
    log_level: str = "INFO"
    log_file: str = "/var/log/letsencrypt-vesta.log"
    syslog: bool = False


def load_config(config_file: Optional[str] = None) -> Config:
    """
    Load configuration from a YAML file and apply environment overrides.

    The file named by LETSENCRYPT_VESTA_CONFIG (or passed in) must exist.
    The default location is optional; when it is absent the built-in defaults apply.
    """
    explicit = config_file or os.environ.get('LETSENCRYPT_VESTA_CONFIG')
    path = explicit or DEFAULT_CONFIG_FILE
    config = Config()
    data = {}

    if os.path.isfile(path):
        try:
            with open(path, 'r') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Error parsing configuration file {path}: {e}")
        except OSError as e:
            raise ConfigError(f"Cannot read configuration file {path}: {e}")
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
    elif explicit:
        raise ConfigError(f"Configuration file {path} not found")

    panel = data.get('panel', {}) or {}
    certbot = data.get('certbot', {}) or {}
    scheduler = data.get('scheduler', {}) or {}
    log_config = data.get('logging', {}) or {}

    config.panel_bin_dir = panel.get('bin_dir', config.panel_bin_dir)
    config.certbot_command = certbot.get('command', config.certbot_command)
    config.webroot = certbot.get('webroot', config.webroot)
    config.live_dir = certbot.get('live_dir', config.live_dir)
    config.staging = bool(certbot.get('staging', config.staging))
    config.certbot_extra_args = [str(arg) for arg in certbot.get('extra_args', []) or []]
    if 'services' in data:
        config.services = [str(service) for service in data['services'] or []]
    config.scheduler_command = scheduler.get('command', config.scheduler_command)
    config.verify_https = bool(data.get('verify_https', config.verify_https))
    config.verify_timeout = int(data.get('verify_timeout', config.verify_timeout))
    config.log_level = str(log_config.get('level', config.log_level))
    config.log_file = log_config.get('file', config.log_file)
    config.syslog = bool(log_config.get('syslog', config.syslog))

    # Environment variables win over the file
    env_overrides = {
        'LETSENCRYPT_VESTA_PANEL_BIN': 'panel_bin_dir',
        'LETSENCRYPT_VESTA_CERTBOT': 'certbot_command',
        'LETSENCRYPT_VESTA_WEBROOT': 'webroot',
        'LETSENCRYPT_VESTA_LIVE_DIR': 'live_dir',
        'LETSENCRYPT_VESTA_LOG_LEVEL': 'log_level',
    }
    for env_var, attr in env_overrides.items():
        if env_var in os.environ:
            setattr(config, attr, os.environ[env_var])

    return config


class SyslogCommandHandler(logging.Handler):
    """Forward log records to the system logger through the `logger` command"""

    def __init__(self, tag: str = LOGGER_NAME):
        super().__init__()
        self.tag = tag

    def emit(self, record: logging.LogRecord) -> None:
        try:
            subprocess.run(['logger', '-t', self.tag, self.format(record)],
                           check=False, capture_output=True)
        except (subprocess.SubprocessError, FileNotFoundError):
            pass  # logger command not available or failed


def setup_logging(config: Config) -> logging.Logger:
    """Setup logging configuration"""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    logger.handlers.clear()

    formatter = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s',
                                  datefmt='%Y-%m-%d %H:%M:%S')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if config.log_file:
        try:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError:
            logger.warning(f"Cannot write to log file {config.log_file}, using console only")

    if config.syslog:
        syslog_handler = SyslogCommandHandler()
        syslog_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
        logger.addHandler(syslog_handler)

    return logger


@dataclass
class CommandResult:
    """Outcome of one external command"""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


Runner = Callable[..., CommandResult]


def run_command(cmd: Sequence[str], input: Optional[str] = None) -> CommandResult:
    """Run a command to completion; a missing executable gives 127, one that cannot be executed 126"""
    try:
        result = subprocess.run(list(cmd), input=input, capture_output=True, text=True)
    except FileNotFoundError as e:
        return CommandResult(127, "", str(e))
    except OSError as e:
        return CommandResult(126, "", str(e))
    return CommandResult(result.returncode, result.stdout, result.stderr)


def command_available(command: str, runner: Runner = run_command) -> bool:
    """Check if a command is available in system PATH"""
    if os.path.isabs(command):
        return os.access(command, os.X_OK)
    return runner(['which', command]).ok


class VestaPanel:
    """Adapter over the panel's v-* command line tools"""

    def __init__(self, bin_dir: str, runner: Runner = run_command):
        self.bin_dir = bin_dir
        self.runner = runner

    def _run(self, command: str, *args: str) -> CommandResult:
        return self.runner([os.path.join(self.bin_dir, command)] + list(args))

    def user_exists(self, user: str) -> bool:
        return self._run('v-list-user', user, 'plain').ok

    def domain_exists(self, user: str, domain: str) -> bool:
        return self._run('v-list-web-domain', user, domain, 'plain').ok

    def list_domains(self, user: str) -> List[str]:
        """Primary domain of every web site the user owns, in panel order"""
        result = self._run('v-list-web-domains', user, 'plain')
        if not result.ok:
            return []
        domains = []
        for line in result.stdout.splitlines():
            fields = line.split()
            if fields:
                domains.append(fields[0])
        return domains

    def domain_aliases(self, user: str, domain: str) -> str:
        """Raw ALIAS value of a web domain, empty when it cannot be read"""
        result = self._run('v-list-web-domain', user, domain, 'shell')
        if not result.ok:
            return ""
        for line in result.stdout.splitlines():
            key, _, value = line.partition(':')
            if key.strip() == 'ALIAS':
                return value.strip()
        return ""

    def get_user_value(self, user: str, key: str) -> str:
        result = self._run('v-get-user-value', user, key)
        return result.stdout.strip() if result.ok else ""

    def has_ssl(self, user: str, domain: str) -> bool:
        result = self._run('v-list-web-domain-ssl', user, domain, 'plain')
        return result.ok and bool(result.stdout.strip())

    def add_ssl(self, user: str, domain: str, ssl_dir: str) -> CommandResult:
        return self._run('v-add-web-domain-ssl', user, domain, ssl_dir)

    def replace_ssl(self, user: str, domain: str, ssl_dir: str) -> CommandResult:
        return self._run('v-change-web-domain-sslcert', user, domain, ssl_dir)


def normalize_aliases(raw: str) -> List[str]:
    """Split a panel alias value on whitespace and commas, dropping empty tokens"""
    token = re.sub(r'[\s,]+', ',', raw.strip()).strip(',')
    if token.lower() in NO_VALUE_MARKERS:
        return []
    return token.split(',')


def resolve_domains(panel: VestaPanel, user: str, domain: str) -> List[str]:
    """Domain group for one site: the primary domain followed by its aliases"""
    return [domain] + normalize_aliases(panel.domain_aliases(user, domain))


@dataclass
class RequestManifest:
    """Accounts, their sites and the flattened domain list for one certificate request"""
    users: List[str] = field(default_factory=list)
    user_domains: List[List[str]] = field(default_factory=list)
    all_domains: List[str] = field(default_factory=list)

    @property
    def common_name(self) -> str:
        return self.all_domains[0]

    @property
    def domain_list(self) -> str:
        return ','.join(self.all_domains)

    def pairs(self) -> List[Tuple[str, str]]:
        """(user, domain) pairs in request order"""
        return [(user, domain)
                for user, domains in zip(self.users, self.user_domains)
                for domain in domains]

    def add_account(self, panel: VestaPanel, user: str, explicit_domains: Sequence[str] = ()) -> None:
        """Add one account's sites; invalid accounts and domains are skipped with a warning"""
        logger = logging.getLogger(LOGGER_NAME)
        try:
            sites = select_sites(panel, user, explicit_domains)
        except InvalidAccount as e:
            logger.warning(str(e))
            return

        if not sites:
            return

        for site in sites:
            self.all_domains.extend(resolve_domains(panel, user, site))
        self.users.append(user)
        self.user_domains.append(list(sites))


def select_sites(panel: VestaPanel, user: str, explicit_domains: Sequence[str]) -> List[str]:
    """
    Pick the sites to request for a user.

    An empty selection means every site the user owns. Explicit domains that do
    not belong to the user are dropped with a warning; order is preserved.
    Raises InvalidAccount if the user does not exist.
    """
    require_user(panel, user)

    if not explicit_domains:
        return panel.list_domains(user)

    logger = logging.getLogger(LOGGER_NAME)
    sites = []
    for domain in explicit_domains:
        try:
            require_domain(panel, user, domain)
        except InvalidDomain as e:
            logger.warning(str(e))
            continue
        sites.append(domain)
    return sites


def require_user(panel: VestaPanel, user: str) -> None:
    if not panel.user_exists(user):
        raise InvalidAccount(f"User {user} does not exist, skipping")


def require_domain(panel: VestaPanel, user: str, domain: str) -> None:
    if not panel.domain_exists(user, domain):
        raise InvalidDomain(f"Domain {domain} does not belong to user {user}, skipping")


@dataclass
class RunOptions:
    """Global options collected from the command line"""
    email: Optional[str] = None
    renew_days: Optional[int] = None


class ParserState(enum.Enum):
    EXPECT_USER = 'expect-user'
    COLLECTING_DOMAINS = 'collecting-domains'


def parse_arguments(argv: Sequence[str], panel: VestaPanel) -> Tuple[RequestManifest, RunOptions]:
    """
    Walk the argument list and build the request manifest.

    `-u` and end of input flush the open account into the manifest.
    `-m` and `-a` are global and may appear anywhere; the last one wins.
    """
    if not argv:
        raise UsageError("No arguments given")

    manifest = RequestManifest()
    options = RunOptions()
    state = ParserState.EXPECT_USER
    user = None
    domains: List[str] = []

    def flush() -> None:
        nonlocal state, user, domains
        if state is ParserState.COLLECTING_DOMAINS:
            manifest.add_account(panel, user, domains)
        state, user, domains = ParserState.EXPECT_USER, None, []

    tokens = iter(argv)
    for token in tokens:
        if token == '-u':
            flush()
        elif token == '-m':
            options.email = _option_value(tokens, '-m')
            if not options.email:
                raise UsageError("Option -m requires a non-empty email address")
        elif token == '-a':
            options.renew_days = _parse_days(_option_value(tokens, '-a'))
        elif state is ParserState.EXPECT_USER:
            user = token
            state = ParserState.COLLECTING_DOMAINS
        else:
            domains.append(token)

    flush()
    return manifest, options


def _option_value(tokens, option: str) -> str:
    try:
        return next(tokens)
    except StopIteration:
        raise UsageError(f"Option {option} requires a value")


def _parse_days(value: str) -> int:
    try:
        days = int(value)
    except ValueError:
        raise UsageError(f"Renewal offset must be a number of days, got '{value}'")
    if days <= 0:
        raise UsageError(f"Renewal offset must be positive, got {days}")
    return days


def validate_manifest(manifest: RequestManifest, options: RunOptions, panel: VestaPanel) -> str:
    """Check the manifest is usable and return the contact email"""
    if not manifest.users:
        raise NoValidUsers("No valid users given")
    if not manifest.all_domains:
        raise NoValidDomains("No valid domains given")

    if options.email:
        return options.email

    email = panel.get_user_value(manifest.users[0], 'CONTACT')
    if not email:
        raise NoContactEmail(f"No contact email configured for user {manifest.users[0]}, use -m")
    return email


@dataclass
class CertificateBundle:
    """Certificate, private key and chain issued for one request"""
    cert: str
    key: str
    chain: str

    @classmethod
    def for_domain(cls, live_dir: str, domain: str) -> 'CertificateBundle':
        base = os.path.join(live_dir, domain)
        return cls(cert=os.path.join(base, 'cert.pem'),
                   key=os.path.join(base, 'privkey.pem'),
                   chain=os.path.join(base, 'chain.pem'))

    def missing_files(self) -> List[str]:
        return [path for path in (self.cert, self.key, self.chain)
                if not os.path.isfile(path) or os.path.getsize(path) == 0]


class CertbotClient:
    """Runs the ACME client once per request in certonly mode"""

    def __init__(self, config: Config, runner: Runner = run_command):
        self.config = config
        self.runner = runner
        self.logger = logging.getLogger(LOGGER_NAME)

    def build_command(self, email: str, domain_list: str, cert_name: str) -> List[str]:
        cmd = [
            self.config.certbot_command, 'certonly',
            '--non-interactive', '--agree-tos',
            '--expand', '--force-renewal',
            '--cert-name', cert_name,
            '--webroot', '-w', self.config.webroot,
            '-m', email,
            '-d', domain_list,
        ]
        if self.config.staging:
            cmd.append('--staging')
        cmd.extend(self.config.certbot_extra_args)
        return cmd

    def issue(self, email: str, manifest: RequestManifest) -> CertificateBundle:
        """Request the certificate; raises IssuanceFailure unless the bundle is in place"""
        self.logger.info(f"Requesting certificate for {manifest.domain_list}")
        result = self.runner(self.build_command(email, manifest.domain_list, manifest.common_name))
        if not result.ok:
            if result.stderr:
                self.logger.error(f"certbot error: {result.stderr.strip()}")
            raise IssuanceFailure(f"Certificate request failed with exit code {result.returncode}")

        bundle = CertificateBundle.for_domain(self.config.live_dir, manifest.common_name)
        missing = bundle.missing_files()
        if missing:
            raise IssuanceFailure(f"Certificate files missing or empty: {', '.join(missing)}")
        self.logger.info(f"Certificate issued for {manifest.common_name}")
        return bundle


class Installer:
    """Installs the issued bundle into the panel for one site at a time"""

    def __init__(self, panel: VestaPanel):
        self.panel = panel
        self.logger = logging.getLogger(LOGGER_NAME)

    def stage(self, bundle: CertificateBundle, domain: str, ssl_dir: str) -> None:
        """Copy the bundle into ssl_dir under the file names the panel expects"""
        for source, suffix in ((bundle.cert, 'crt'), (bundle.key, 'key'), (bundle.chain, 'ca')):
            shutil.copyfile(source, os.path.join(ssl_dir, f"{domain}.{suffix}"))

    def install(self, user: str, domain: str, bundle: CertificateBundle) -> bool:
        ssl_dir = tempfile.mkdtemp(prefix=f"letsencrypt-vesta.{domain}.")
        try:
            self.stage(bundle, domain, ssl_dir)
            if self.panel.has_ssl(user, domain):
                action = 'replace'
                result = self.panel.replace_ssl(user, domain, ssl_dir)
            else:
                action = 'add'
                result = self.panel.add_ssl(user, domain, ssl_dir)
        except OSError as e:
            self.logger.error(f"Failed to stage certificate for {domain}: {e}")
            return False
        finally:
            shutil.rmtree(ssl_dir, ignore_errors=True)

        if not result.ok:
            self.logger.error(f"Failed to {action} certificate for {user}/{domain}: "
                              f"{(result.stderr or result.stdout).strip()}")
            return False
        self.logger.info(f"Certificate {'replaced' if action == 'replace' else 'added'} for {user}/{domain}")
        return True

    def install_all(self, manifest: RequestManifest, bundle: CertificateBundle) -> List[str]:
        """Install for every (user, domain) pair; returns the domains that failed"""
        failed = []
        for user, domain in manifest.pairs():
            if not self.install(user, domain, bundle):
                failed.append(domain)
        return failed


def reload_services(services: Sequence[str], runner: Runner = run_command) -> None:
    """Reload every running web server, best effort"""
    logger = logging.getLogger(LOGGER_NAME)
    for service in services:
        if not runner(['systemctl', 'is-active', service]).ok:
            logger.debug(f"Service not active: {service}")
            continue
        result = runner(['systemctl', 'reload', service])
        if result.ok:
            logger.info(f"Reloaded {service}")
        else:
            logger.warning(f"Failed to reload {service}: {result.stderr.strip()}")


def verify_https(domains: Sequence[str], timeout: int = 30) -> List[str]:
    """Fetch each domain over HTTPS with certificate verification; returns failures"""
    logger = logging.getLogger(LOGGER_NAME)
    failed = []
    for domain in domains:
        try:
            requests.get(f"https://{domain}/", timeout=timeout)
            logger.info(f"HTTPS check passed for {domain}")
        except requests.RequestException as e:
            logger.warning(f"HTTPS check failed for {domain}: {e}")
            failed.append(domain)
    return failed


def schedule_renewal(days: int, command_line: Sequence[str], config: Config,
                     runner: Runner = run_command) -> None:
    """Queue command_line to run again after `days` days; raises SchedulerUnavailable"""
    if not command_available(config.scheduler_command, runner):
        raise SchedulerUnavailable(f"'{config.scheduler_command}' not found, renewal not scheduled")

    result = runner([config.scheduler_command, 'now', '+', str(days), 'days'],
                    input=shlex.join(command_line) + '\n')
    if not result.ok:
        raise SchedulerUnavailable(f"Failed to schedule renewal: {result.stderr.strip()}")
    logging.getLogger(LOGGER_NAME).info(f"Renewal scheduled in {days} days")


def run(argv: Sequence[str], config: Config, runner: Runner = run_command,
        program: Optional[str] = None) -> int:
    """Main execution logic; returns the exit code"""
    logger = logging.getLogger(LOGGER_NAME)
    panel = VestaPanel(config.panel_bin_dir, runner)

    manifest, options = parse_arguments(argv, panel)
    email = validate_manifest(manifest, options, panel)
    logger.info(f"Users: {' '.join(manifest.users)}")
    logger.info(f"Domains: {manifest.domain_list}")

    bundle = CertbotClient(config, runner).issue(email, manifest)

    failed = Installer(panel).install_all(manifest, bundle)
    reload_services(config.services, runner)

    if config.verify_https:
        installed = [domain for _, domain in manifest.pairs() if domain not in failed]
        verify_https(installed, config.verify_timeout)

    exit_code = ExitCodes.SUCCESS
    if failed:
        logger.error(f"Installation failed for: {', '.join(failed)}")
        exit_code = ExitCodes.INSTALL

    if options.renew_days:
        program = program or os.path.abspath(sys.argv[0])
        try:
            schedule_renewal(options.renew_days, [program] + list(argv), config, runner)
        except SchedulerUnavailable as e:
            logger.warning(str(e))
            if exit_code == ExitCodes.SUCCESS:
                exit_code = e.exit_code

    return exit_code


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main function"""
    argv = list(sys.argv[1:] if argv is None else argv)

    if not argv:
        sys.stderr.write(USAGE)
        return ExitCodes.USAGE
    if argv[0] in ('-h', '--help'):
        sys.stdout.write(USAGE)
        return ExitCodes.SUCCESS

    try:
        config = load_config()
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    logger = setup_logging(config)
    logger.info("=== Let's Encrypt for Vesta Started ===")

    try:
        exit_code = run(argv, config)
    except UsageError as e:
        logger.error(str(e))
        sys.stderr.write(USAGE)
        return e.exit_code
    except LetsEncryptVestaError as e:
        logger.error(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return ExitCodes.INTERRUPTED
    except Exception as e:
        logger.error(f"FATAL ERROR: {e}")
        traceback.print_exc()
        return ExitCodes.USAGE

    logger.info(f"=== Let's Encrypt for Vesta Completed (exit code {exit_code}) ===")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
