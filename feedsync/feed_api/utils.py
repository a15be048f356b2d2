# feedsync/feed_api/utils.py
#
#
# Imports
import logging
import mimetypes
from pathlib import Path
from typing import Optional, List, IO, Tuple
#
#######################################################################################################################
#
# Functions:

logger = logging.getLogger(__name__)


def prepare_file_for_httpx(
    file_path: str,
    file_name: Optional[str] = None,
    mime_type: Optional[str] = None,
    upload_field_name: str = "content"
) -> Optional[List[Tuple[str, Tuple[str, IO[bytes], str]]]]:
    """
    Prepares a local file for httpx multipart upload.

    Args:
        file_path: Path to the local file.
        file_name: Name to send to the server; defaults to the file's own name.
        mime_type: Content type; guessed from the name when not given.
        upload_field_name: The multipart field that carries the file body.

    Returns:
        A list with one tuple formatted for httpx's `files` argument, or None if
        the file does not exist.
    """
    file_path_obj = Path(file_path)
    if not file_path_obj.is_file():
        logger.warning(f"File not found or not a file: {file_path}")
        return None

    name = file_name or file_path_obj.name
    if mime_type is None:
        mime_type, _ = mimetypes.guess_type(name)
    if mime_type is None:
        mime_type = 'application/octet-stream'
        logger.debug(f"Could not guess MIME type for {name}. Defaulting to {mime_type}.")

    file_obj = open(file_path_obj, "rb")
    return [(upload_field_name, (name, file_obj, mime_type))]


def close_httpx_files(files: Optional[List[Tuple[str, Tuple[str, IO[bytes], str]]]]) -> None:
    if not files:
        return
    for _, (_, file_obj, _) in files:
        try:
            file_obj.close()
        except OSError as e:
            logger.warning(f"Failed to close upload file handle: {e}")

#
# End of utils.py
#######################################################################################################################
