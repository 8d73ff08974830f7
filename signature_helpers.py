"""Signature primitives shared by the V2 (shared-secret) and V4 (derived-key) signers"""

import base64
import hashlib
import hmac
import urllib.parse

ALGORITHM_V4 = 'AWS4-HMAC-SHA256'
SCOPE_TERMINATOR = 'aws4_request'
EMPTY_SHA256 = hashlib.sha256(b'').hexdigest()

_UNRESERVED = frozenset('ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_.~')


def uri_encode(value, encode_slash=True):
    """Percent-encode everything outside the RFC 3986 unreserved set, uppercase hex.

    Args:
        value: String to encode (encoded as UTF-8 first)
        encode_slash: Whether '/' is encoded too

    Returns:
        Encoded string
    """
    result = []
    for byte in value.encode('utf-8'):
        ch = chr(byte)
        if ch in _UNRESERVED or (ch == '/' and not encode_slash):
            result.append(ch)
        else:
            result.append(f'%{byte:02X}')
    return ''.join(result)


def canonical_uri(raw_path):
    """S3 canonical URI: decode once, encode once, keep slashes, no dot-segment cleanup."""
    if not raw_path:
        return '/'
    return uri_encode(urllib.parse.unquote(raw_path), encode_slash=False)


def canonical_query_string(raw_query):
    """Sorted, re-encoded query string for the V4 canonical request

    Args:
        raw_query: Query string as received, without the leading '?'

    Returns:
        Canonical query string
    """
    if not raw_query:
        return ''

    params = []
    for param in raw_query.split('&'):
        if not param:
            continue
        key, _, value = param.partition('=')
        params.append((uri_encode(urllib.parse.unquote(key)), uri_encode(urllib.parse.unquote(value))))
    params.sort()
    return '&'.join(f'{key}={value}' for key, value in params)


def canonical_headers(headers):
    """Canonical header block and signed-headers list

    Args:
        headers: Iterable of (name, value) pairs; names may repeat

    Returns:
        tuple: (canonical_headers, signed_headers) where canonical_headers has
        one 'name:value\\n' line per lower-cased name, and signed_headers is
        the ';'-joined sorted name list
    """
    grouped = {}
    for name, value in headers:
        grouped.setdefault(name.lower(), []).append(' '.join(value.split()))

    names = sorted(grouped)
    block = ''.join(f"{name}:{','.join(grouped[name])}\n" for name in names)
    return block, ';'.join(names)


def build_canonical_request(method, raw_path, raw_query, headers_block, signed_headers, payload_hash):
    return '\n'.join([
        method,
        canonical_uri(raw_path),
        canonical_query_string(raw_query),
        headers_block,
        signed_headers,
        payload_hash,
    ])


def derive_signing_key(secret_key, datestamp, region, service='s3'):
    """Walk the HMAC-SHA256 chain secret -> date -> region -> service -> aws4_request"""
    def sign(key, msg):
        return hmac.new(key, msg.encode('utf-8'), hashlib.sha256).digest()

    k_date = sign(('AWS4' + secret_key).encode('utf-8'), datestamp)
    k_region = sign(k_date, region)
    k_service = sign(k_region, service)
    return sign(k_service, SCOPE_TERMINATOR)


def calculate_signature_v4(secret_key, datestamp, timestamp, credential_scope, canonical_request, region='',
                           service='s3'):
    """Calculate AWS Signature V4

    Args:
        secret_key: Secret key
        datestamp: Date in YYYYMMDD format
        timestamp: ISO timestamp in YYYYMMDDTHHMMSSZ format
        credential_scope: Credential scope string
        canonical_request: Canonical request string
        region: Region name (empty string for S3-compatible services)
        service: Service name in the credential scope

    Returns:
        Hex-encoded signature string
    """
    canonical_hash = hashlib.sha256(canonical_request.encode('utf-8')).hexdigest()
    string_to_sign = f"{ALGORITHM_V4}\n{timestamp}\n{credential_scope}\n{canonical_hash}"

    signing_key = derive_signing_key(secret_key, datestamp, region, service)
    return hmac.new(signing_key, string_to_sign.encode('utf-8'), hashlib.sha256).hexdigest()


def build_string_to_sign_v2(method, content_md5, content_type, date, canonicalized_headers, canonicalized_resource):
    """Canonical string for the shared-secret scheme.

    The headers block is either empty or already newline-terminated, so it is
    concatenated directly onto the resource.
    """
    return (
        f"{method}\n{content_md5 or ''}\n{content_type or ''}\n{date}\n"
        f"{canonicalized_headers}{canonicalized_resource}"
    )


def calculate_signature_v2(secret_key, string_to_sign):
    """Calculate a Signature V2 (HMAC-SHA1)

    Args:
        secret_key: Secret key
        string_to_sign: Output of build_string_to_sign_v2

    Returns:
        Base64-encoded signature string
    """
    signature = hmac.new(
        secret_key.encode('utf-8'),
        string_to_sign.encode('utf-8'),
        hashlib.sha1
    ).digest()

    return base64.b64encode(signature).decode('utf-8')
