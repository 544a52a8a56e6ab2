from storages.backends.s3boto3 import S3Boto3Storage


class StaticStorage(S3Boto3Storage):
    location = 'static'
    default_acl = 'public-read'
    querystring_auth = False


class MediaStorage(S3Boto3Storage):
    """Chat attachments and avatars; served through signed URLs."""
    location = 'media'
    file_overwrite = False
