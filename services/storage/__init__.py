from .uploader import StorageUploader, UploadError

__all__ = ["StorageUploader", "UploadError"]
