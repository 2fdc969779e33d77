"""
Storage engines for uploaded files.

Uploads are first written to the OS temp directory so they can be validated.
A storage engine then takes the temporary path and persists the file under a
generated name, deleting the temporary copy.
"""
import logging
import os
import shutil
import tempfile
import uuid

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

from registration.config import BASE_DIR

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB


class StorageError(Exception):
    """A storage engine failed to persist or read a file."""


class FileTooLargeError(StorageError):
    """An upload exceeded MAX_FILE_SIZE."""


class DiskStorageEngine:
    """Moves uploads into a directory relative to the repository root."""

    def __init__(self, options: dict):
        self.options = dict(options or {})
        self.upload_root = os.path.join(BASE_DIR, self.options.get('upload_directory', 'uploads'))
        os.makedirs(self.upload_root, exist_ok=True)

    def _path(self, name: str) -> str:
        return os.path.join(self.upload_root, os.path.basename(name))

    def save_file(self, current_path: str, name: str) -> str:
        destination = self._path(name)
        try:
            # shutil.move copies across filesystems and removes the source
            shutil.move(current_path, destination)
        except OSError as e:
            raise StorageError(f'Could not save {name}: {e}') from e
        return destination

    def read_file(self, name: str):
        try:
            return open(self._path(name), 'rb')
        except OSError as e:
            raise StorageError(f'Could not read {name}: {e}') from e

    def delete_file(self, name: str):
        try:
            os.remove(self._path(name))
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f'Could not delete {name}: {e}') from e


class S3StorageEngine:
    """Uploads files to an S3 bucket."""

    def __init__(self, options: dict):
        self.options = dict(options or {})
        if not self.options.get('bucket'):
            raise ValueError('S3 storage engine requires a "bucket" option')
        self.bucket = self.options['bucket']
        self.region = self.options.get('region', 'us-east-1')
        self.prefix = self.options.get('prefix', '').strip('/')
        self.upload_root = f's3://{self.bucket}/{self.prefix}'.rstrip('/')
        self.s3_client = boto3.client('s3', region_name=self.region)
        logger.info(f'S3 storage initialized: bucket={self.bucket}, region={self.region}')

    def _key(self, name: str) -> str:
        name = os.path.basename(name)
        return f'{self.prefix}/{name}' if self.prefix else name

    def save_file(self, current_path: str, name: str) -> str:
        key = self._key(name)
        try:
            self.s3_client.upload_file(current_path, self.bucket, key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f'Could not upload {name} to S3: {e}') from e
        os.remove(current_path)
        return f'{self.upload_root}/{os.path.basename(name)}'

    def read_file(self, name: str):
        try:
            response = self.s3_client.get_object(Bucket=self.bucket, Key=self._key(name))
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', '')
            raise StorageError(f'Could not read {name} from S3 ({error_code})') from e
        return response['Body']

    def delete_file(self, name: str):
        try:
            self.s3_client.delete_object(Bucket=self.bucket, Key=self._key(name))
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f'Could not delete {name} from S3: {e}') from e


STORAGE_ENGINES = {
    'disk': DiskStorageEngine,
    's3': S3StorageEngine,
}


def create_storage_engine(name: str, options: dict):
    engine_cls = STORAGE_ENGINES.get(name)
    if engine_cls is None:
        raise ValueError(f'Storage engine "{name}" does not exist')
    return engine_cls(options)


def store_upload(engine, upload) -> dict:
    """Persist a werkzeug ``FileStorage`` and return its metadata."""
    original_name = upload.filename
    extension = os.path.splitext(secure_filename(original_name))[1].lower()
    filename = f'{uuid.uuid4().hex}{extension}'

    fd, temp_path = tempfile.mkstemp(prefix='upload-')
    os.close(fd)
    try:
        upload.save(temp_path)
        size = os.path.getsize(temp_path)
        if size > MAX_FILE_SIZE:
            raise FileTooLargeError(f'{original_name} is larger than the {MAX_FILE_SIZE // (1024 * 1024)} MB limit')
        path = engine.save_file(temp_path, filename)
    finally:
        if os.path.exists(temp_path):
            os.remove(temp_path)

    logger.info(f'Stored upload {original_name} as {filename} ({size} bytes)')
    return {
        'original_name': original_name,
        'filename': filename,
        'mimetype': upload.mimetype or 'application/octet-stream',
        'size': size,
        'path': path,
    }


def discard_uploads(engine, uploads: list):
    """Delete stored uploads (metadata from ``store_upload``) after a failed submission."""
    for metadata in uploads:
        try:
            engine.delete_file(metadata['filename'])
        except StorageError as e:
            logger.warning(f'Could not remove orphaned upload {metadata["filename"]}: {e}')
        else:
            logger.info(f'Removed orphaned upload {metadata["filename"]}')
