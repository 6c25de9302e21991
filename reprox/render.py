from __future__ import annotations

import os
import tempfile
from typing import Mapping, Sequence

from jinja2 import Environment, PackageLoader, StrictUndefined, TemplateError

from .certs import CertPaths
from .errors import RenderError, WriteError
from .runtime import Route

TEMPLATE_NAME = "apps.conf.j2"

_env = Environment(
    loader=PackageLoader("reprox", "templates"),
    undefined=StrictUndefined,
    keep_trailing_newline=True,
    autoescape=False,
)


def render(routes: Sequence[Route], cert_paths: Mapping[str, CertPaths]) -> str:
    """Expand the nginx template for ``routes``, in order.

    ``cert_paths`` maps each routed host to the key/chain pair nginx should load.
    No I/O besides the template load.
    """
    try:
        template = _env.get_template(TEMPLATE_NAME)
        return template.render(routes=list(routes), cert_paths=cert_paths)
    except TemplateError as e:
        raise RenderError(f"{TEMPLATE_NAME}: {e}") from e


def write_config(path: str, text: str) -> None:
    """Replace ``path`` with ``text``.

    The content goes to a temp file next to the target, is read back and
    compared, then renamed over the target. On any failure the old file stays.
    """
    data = text.encode("utf-8")
    directory = os.path.dirname(os.path.abspath(path))
    tmp_path = None
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".reprox-", suffix=".conf", dir=directory)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        with open(tmp_path, "rb") as f:
            if f.read() != data:
                raise WriteError(f"{path}: written bytes do not match rendered config")
        os.chmod(tmp_path, 0o644)
        os.replace(tmp_path, path)
        tmp_path = None
    except OSError as e:
        raise WriteError(f"{path}: {e}") from e
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
