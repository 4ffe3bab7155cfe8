from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def build_url(url: str, params: Optional[Mapping[str, str]] = None) -> str:
    """
    Append query parameters to a URL, keeping any query it already carries.
    Parameters given here replace existing ones of the same name.
    """
    if not params:
        return url
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend((k, v) for k, v in params.items() if v is not None)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))
