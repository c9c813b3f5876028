"""对象存储服务（当前为本地文件系统实现）。"""

import logging
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}
DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024


class StorageError(Exception):
    """文件写入或校验失败。"""


@dataclass(frozen=True)
class UploadedFile:
    """与 Web 框架无关的上传文件描述。"""

    filename: str
    content_type: str | None
    content: bytes


def is_image_upload(file: UploadedFile) -> bool:
    """根据后缀与声明的 MIME 类型判断是否为图片。"""
    ext = Path(file.filename).suffix.lower()
    if ext not in IMAGE_EXTENSIONS:
        return False
    return file.content_type is None or file.content_type.startswith("image/")


class LocalFileStorage:
    """把上传文件写入本地目录，并返回可公开访问的 URL。"""

    def __init__(self, root: str, public_url: str, max_bytes: int = DEFAULT_MAX_UPLOAD_BYTES) -> None:
        self.root = Path(root)
        self.public_url = public_url.rstrip("/")
        self.max_bytes = max_bytes

    def upload(self, file: UploadedFile, folder: str) -> str:
        """保存图片并返回访问地址。"""
        if not file.content:
            raise StorageError("empty upload")
        if len(file.content) > self.max_bytes:
            raise StorageError(f"file too large: {len(file.content)} bytes exceeds {self.max_bytes}")
        if not is_image_upload(file):
            raise StorageError(f"unsupported file type: {file.filename}")
        # 仅保留后缀，文件名由服务端生成，避免目录穿越与重名覆盖。
        ext = Path(file.filename).suffix.lower()
        object_key = f"{folder.strip('/')}/{uuid4().hex}{ext}"

        target = self.root.joinpath(object_key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(file.content)
        logger.debug("stored upload key=%s size=%s", object_key, len(file.content))
        return f"{self.public_url}/{object_key}"

    def delete(self, url: str) -> bool:
        """按访问地址删除文件，地址不属于本存储或文件不存在时返回 False。"""
        prefix = f"{self.public_url}/"
        if not url.startswith(prefix):
            logger.debug("skip deleting foreign url=%s", url)
            return False
        object_key = url[len(prefix):]
        root = self.root.resolve()
        target = root.joinpath(object_key).resolve()
        if root not in target.parents:
            logger.warning("refuse to delete path outside storage root key=%s", object_key)
            return False
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        except OSError:
            logger.exception("delete stored file failed key=%s", object_key)
            return False
        return True
