"""Request signers for the upstream object-storage service.

Two interchangeable schemes, selected by OSS_SIGNER:

- v4: derived-key signature (AWS4-HMAC-SHA256, service "s3")
- v2: shared-secret signature (HMAC-SHA1, "OSS <access-key>:<signature>")

Both mutate the headers of an httpx.Request draft in place. The body must
not change after signing.
"""

import argparse
import dataclasses
import hashlib
import sys
import urllib.parse
from datetime import datetime, timezone
from email.utils import format_datetime

from config import SIGNER_CHOICES, load_config
from errors import ProxyError, SigningError
from proxy import Forwarder, ProxyRequest, parse_path
from signature_helpers import (
    ALGORITHM_V4,
    SCOPE_TERMINATOR,
    build_canonical_request,
    build_string_to_sign_v2,
    calculate_signature_v2,
    calculate_signature_v4,
    canonical_headers,
)

DEFAULT_CONTENT_TYPE = 'application/octet-stream'

# Never part of SignedHeaders; proxies and clients may rewrite them.
UNSIGNED_HEADERS = frozenset({'authorization', 'expect', 'transfer-encoding', 'user-agent', 'x-amzn-trace-id'})


def _utc(now):
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


class Signer:
    """Base class for request signers."""

    def __init__(self, credentials, region):
        self.credentials = credentials
        self.region = region

    def sign(self, request, bucket, object_key, now=None):
        """Attach authentication headers to `request`.

        Args:
            request: httpx.Request draft, body already set
            bucket: Bucket name from the proxy path
            object_key: Object key from the proxy path, as received
            now: Signing time, defaults to the current UTC time

        Returns:
            The same request, signed
        """
        raise NotImplementedError("Subclasses must implement sign")


class DerivedKeySigner(Signer):
    """AWS Signature V4 with a date/region/service scoped signing key."""

    service = 's3'

    def sign(self, request, bucket, object_key, now=None):
        now = _utc(now)
        try:
            body = request.content
            if body and 'Content-Type' not in request.headers:
                request.headers['Content-Type'] = DEFAULT_CONTENT_TYPE

            payload_hash = hashlib.sha256(body).hexdigest()
            timestamp = now.strftime('%Y%m%dT%H%M%SZ')
            datestamp = timestamp[:8]
            request.headers['X-Amz-Date'] = timestamp
            request.headers['X-Amz-Content-Sha256'] = payload_hash

            headers_block, signed_headers = canonical_headers(
                (name, value)
                for name, value in request.headers.multi_items()
                if name.lower() not in UNSIGNED_HEADERS
            )
            raw_path, _, raw_query = request.url.raw_path.decode('ascii').partition('?')
            canonical_request = build_canonical_request(
                request.method, raw_path, raw_query, headers_block, signed_headers, payload_hash
            )

            credential_scope = f'{datestamp}/{self.region}/{self.service}/{SCOPE_TERMINATOR}'
            signature = calculate_signature_v4(
                self.credentials.secret_key,
                datestamp,
                timestamp,
                credential_scope,
                canonical_request,
                self.region,
                self.service,
            )
        except Exception as e:
            raise SigningError(f'failed to sign request: {e}') from e

        request.headers['Authorization'] = (
            f'{ALGORITHM_V4} Credential={self.credentials.access_key}/{credential_scope}, '
            f'SignedHeaders={signed_headers}, Signature={signature}'
        )
        return request


class SharedSecretSigner(Signer):
    """OSS Signature V2: HMAC-SHA1 over method, MD5, type, date and resource."""

    scheme_tag = 'OSS'

    def canonicalized_headers(self, headers):
        """Provider metadata headers taking part in the signature. None do yet."""
        return ''

    def canonicalized_resource(self, bucket, object_key):
        return f'/{bucket}/{urllib.parse.unquote(object_key)}'

    def sign(self, request, bucket, object_key, now=None):
        # One timestamp feeds both the Date header and the string to sign.
        date = format_datetime(_utc(now), usegmt=True)

        if 'Content-Type' not in request.headers:
            request.headers['Content-Type'] = DEFAULT_CONTENT_TYPE
        request.headers['Date'] = date

        string_to_sign = build_string_to_sign_v2(
            request.method,
            request.headers.get('Content-MD5', ''),
            request.headers['Content-Type'],
            date,
            self.canonicalized_headers(request.headers),
            self.canonicalized_resource(bucket, object_key),
        )
        signature = calculate_signature_v2(self.credentials.secret_key, string_to_sign)
        request.headers['Authorization'] = f'{self.scheme_tag} {self.credentials.access_key}:{signature}'
        return request


SIGNERS = {
    'v4': DerivedKeySigner,
    'v2': SharedSecretSigner,
}


def create_signer(config):
    return SIGNERS[config.signer](config.credentials, config.region)


def main(argv=None):
    parser = argparse.ArgumentParser(description='Print the signed upstream request the proxy would send')
    parser.add_argument('method', help='HTTP method, e.g. GET or PUT')
    parser.add_argument('path', help='Proxy path, e.g. /mybucket/a/b.txt or /mybucket/?acl')
    parser.add_argument('--header', '-H', action='append', default=[], help='Request header "Name: value" (repeatable)')
    parser.add_argument('--body-file', '-d', help='File to use as the request body')
    parser.add_argument('--signer', '-s', choices=SIGNER_CHOICES, help='Signature scheme (default: OSS_SIGNER or v4)')

    args = parser.parse_args(argv)

    headers = []
    for header in args.header:
        name, sep, value = header.partition(':')
        if not sep:
            parser.error(f'invalid header {header!r}, expected "Name: value"')
        headers.append((name.strip().encode('latin-1'), value.strip().encode('latin-1')))

    body = b''
    if args.body_file:
        with open(args.body_file, 'rb') as f:
            body = f.read()

    raw_path, _, raw_query = args.path.partition('?')
    try:
        config = load_config()
        if args.signer:
            config = dataclasses.replace(config, signer=args.signer)
        bucket, object_key = parse_path(raw_path)
        proxy_request = ProxyRequest(
            method=args.method.upper(),
            bucket=bucket,
            object_key=object_key,
            raw_query=raw_query,
            headers=headers,
            body=body,
        )
        signer = create_signer(config)
        request = Forwarder(config, signer).build_request(proxy_request)
        signer.sign(request, bucket, object_key)
    except ProxyError as e:
        parser.error(str(e))

    print(f'{request.method} {request.url}')
    for name, value in request.headers.multi_items():
        print(f'{name}: {value}')
    return 0


if __name__ == "__main__":
    sys.exit(main())
