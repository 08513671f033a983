from .scan import scan_server, ScanError, DEFAULT_MAX_WORKERS, ALL_CIPHERS_EXPRESSION, DEFAULT_CIPHER_EXPRESSION, to_json_obj
from .executor import ConnectionSettings, HandshakeRequest, OpenSSLExecutor, DEFAULT_TIMEOUT, find_trust_anchors, parse_target
from .certificates import CertificateRegistry
from .names_and_numbers import ProtocolVersion, PROTOCOL_SWEEP

import os
import sys
import json
import logging
import argparse
from typing import Optional
parser = argparse.ArgumentParser(prog="python -m cipher_order", formatter_class=argparse.ArgumentDefaultsHelpFormatter)
parser.add_argument("target", help="server to scan, in the form of 'example.com', 'example.com:443', or even a full URL")
parser.add_argument("--timeout", "-t", dest="timeout", type=float, default=DEFAULT_TIMEOUT, help="handshake timeout in seconds")
parser.add_argument("--delay", "-d", type=float, default=0, help="seconds to wait before each handshake, to avoid tripping rate limits")
parser.add_argument("--max-workers", "-w", type=int, default=DEFAULT_MAX_WORKERS, help="maximum number of concurrent handshakes within a round")
parser.add_argument("--server-name-indication", "-s", default=None, help="value to be used in the SNI extension, defaults to the target host, pass empty string to not send SNI")
parser.add_argument("--all-ciphers", "-a", default=False, action=argparse.BooleanOptionalAction, help="also test ciphers outside of ALL, such as NULL ciphers")
parser.add_argument("--protocols", "-p", dest='protocols_str', default=','.join(p.name for p in PROTOCOL_SWEEP), help="comma separated list of protocol selectors to sweep in each round, in order")
parser.add_argument("--openssl", default=None, help="openssl binary to use, defaults to the first one in PATH")
parser.add_argument("--cafile", default=None, help="file with trust anchors, defaults to the system store")
parser.add_argument("--capath", default=None, help="directory with trust anchors, defaults to the system store")
parser.add_argument("--save-trusted", default=None, metavar="DIR", help="save verified CA certificates to this directory and use it as an extra trust directory")
parser.add_argument("--save-scanned", default=None, metavar="DIR", help="save every other certificate seen to this directory")
parser.add_argument("--starttls", default=None, help="STARTTLS sub-protocol to use, such as smtp or imap")
parser.add_argument("--client-cert", default=None, help="client certificate to present")
parser.add_argument("--proxy", default=None, help="HTTP proxy to use for the connection, defaults to the env variable 'https_proxy' else no proxy")
parser.add_argument("--verbose", "-v", action="count", default=0, help="increase output verbosity")
parser.add_argument("--progress", default=False, action=argparse.BooleanOptionalAction, help="write a line to stderr for every cipher found")
args = parser.parse_args()

logging.basicConfig(
    datefmt='%Y-%m-%d %H:%M:%S',
    format='{asctime}.{msecs:0<3.0f} {module} {threadName} {levelname}: {message}',
    style='{',
    level=[logging.WARNING, logging.INFO, logging.DEBUG][min(2, args.verbose)]
)

if not args.protocols_str:
    parser.error("no protocols to test")
try:
    protocols = [ProtocolVersion[p] for p in args.protocols_str.split(',')]
except KeyError as e:
    parser.error(f'invalid protocol name "{e.args[0]}", must be one of {", ".join(p.name for p in ProtocolVersion)}')

host, port = parse_target(args.target)

proxy = os.environ.get('https_proxy') or os.environ.get('HTTPS_PROXY') if args.proxy is None else args.proxy

if args.progress:
    progress = lambda result: print(f'{result.cipher_name}', flush=True, file=sys.stderr)
else:
    progress = lambda result: None

server_name: Optional[str]
if args.server_name_indication is None:
    # Argument unset, default to host.
    server_name = host
elif args.server_name_indication == '':
    # Argument explicitly set to empty string, interpret as "no SNI".
    server_name = None
else:
    server_name = args.server_name_indication

try:
    if args.cafile or args.capath:
        ca_file, ca_path = args.cafile, args.capath
    else:
        ca_file, ca_path = find_trust_anchors()

    results = scan_server(
        ConnectionSettings(
            host=host,
            port=port,
            proxy=proxy,
            timeout_in_seconds=args.timeout,
            delay_in_seconds=args.delay,
            starttls=args.starttls,
            client_certificate=args.client_cert,
        ),
        HandshakeRequest(
            server_name=server_name,
            cipher_expression=ALL_CIPHERS_EXPRESSION if args.all_ciphers else DEFAULT_CIPHER_EXPRESSION,
        ),
        executor=OpenSSLExecutor(args.openssl, ca_file=ca_file, ca_path=ca_path),
        registry=CertificateRegistry(
            ca_file=ca_file,
            ca_path=ca_path,
            save_trusted_dir=args.save_trusted,
            save_scanned_dir=args.save_scanned,
        ),
        protocols=protocols,
        max_workers=args.max_workers,
        on_result=progress,
    )
    json.dump(to_json_obj(results), sys.stdout, indent=2)
except ScanError as e:
    print(f'Scan error: {e.args[0]}', file=sys.stderr)
    if args.verbose > 0:
        raise
    else:
        exit(1)
