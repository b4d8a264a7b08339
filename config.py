"""Configuration settings for the REST repository server."""
import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

# Directory paths
DATA_DIR = "/tmp/restic"
HTPASSWD_FILENAME = ".htpasswd"

# Listener
LISTEN_ADDR = ":8000"

# Object constraints
MAX_ID_LENGTH = 200
CHUNK_SIZE = 8192  # 8KB

# Credential store timings (seconds)
CHECK_INTERVAL = 30
PASSWORD_CACHE_DURATION = 60
CACHE_SWEEP_INTERVAL = 5

# Suffix of in-flight upload files, removed at startup
TEMP_SUFFIX = ".tmp"


@dataclass
class ServerConfig:
    path: str = DATA_DIR
    listen: str = LISTEN_ADDR
    log: str = ""
    debug: bool = False
    append_only: bool = False
    private_repos: bool = False
    no_auth: bool = False
    htpasswd_file: str = ""
    no_verify_upload: bool = False
    max_size: int = 0  # bytes, 0 disables the quota
    prometheus: bool = False
    prometheus_no_auth: bool = False
    tls: bool = False
    tls_cert: str = ""
    tls_key: str = ""

    @property
    def data_path(self) -> Path:
        return Path(self.path).absolute()

    @property
    def htpasswd_path(self) -> Path:
        if self.htpasswd_file:
            return Path(self.htpasswd_file)
        return self.data_path / HTPASSWD_FILENAME

    def listen_host_port(self):
        """Split the listen address into (host, port), defaulting the host to all interfaces."""
        host, _, port = self.listen.rpartition(":")
        return host or "0.0.0.0", int(port)

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> 'ServerConfig':
        """Create ServerConfig from command line arguments."""
        parser = argparse.ArgumentParser(description='REST server for restic repositories')
        parser.add_argument('--path', default=DATA_DIR,
                            help='data directory')
        parser.add_argument('--listen', default=LISTEN_ADDR,
                            help='listen address')
        parser.add_argument('--log', default='',
                            help='write HTTP requests in the combined log format to the specified filename')
        parser.add_argument('--debug', action='store_true',
                            help='output debug messages')
        parser.add_argument('--append-only', action='store_true',
                            help='enable append only mode')
        parser.add_argument('--private-repos', action='store_true',
                            help='users can only access their private repo')
        parser.add_argument('--no-auth', action='store_true',
                            help='disable .htpasswd authentication')
        parser.add_argument('--htpasswd-file', default='',
                            help='location of .htpasswd file (default: "<data directory>/.htpasswd")')
        parser.add_argument('--no-verify-upload', action='store_true',
                            help='do not verify the integrity of uploaded data')
        parser.add_argument('--max-size', type=int, default=0,
                            help='the maximum size of the repository in bytes')
        parser.add_argument('--prometheus', action='store_true',
                            help='enable Prometheus metrics')
        parser.add_argument('--prometheus-no-auth', action='store_true',
                            help='disable auth for Prometheus /metrics endpoint')
        parser.add_argument('--tls', action='store_true',
                            help='turn on TLS support')
        parser.add_argument('--tls-cert', default='',
                            help='TLS certificate path')
        parser.add_argument('--tls-key', default='',
                            help='TLS key path')
        args = parser.parse_args(argv)

        if args.max_size < 0:
            parser.error('--max-size must not be negative')
        if args.tls and not (args.tls_cert and args.tls_key):
            parser.error('--tls requires --tls-cert and --tls-key')

        return cls(
            path=args.path,
            listen=args.listen,
            log=args.log,
            debug=args.debug,
            append_only=args.append_only,
            private_repos=args.private_repos,
            no_auth=args.no_auth,
            htpasswd_file=args.htpasswd_file,
            no_verify_upload=args.no_verify_upload,
            max_size=args.max_size,
            prometheus=args.prometheus,
            prometheus_no_auth=args.prometheus_no_auth,
            tls=args.tls,
            tls_cert=args.tls_cert,
            tls_key=args.tls_key,
        )
