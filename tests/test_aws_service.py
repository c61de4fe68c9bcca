"""
Case File Storage Tests
"""
import json
from unittest import mock

import pytest
from botocore.exceptions import ClientError

from casekit.services import aws_service
from casekit.services.aws_service import (
    StorageError,
    UnsupportedFileError,
    ensure_bucket,
    safe_filename,
    upload_case_file,
)


def client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'HeadBucket')


class TestKeys:
    """Object keys and URLs"""

    @pytest.mark.parametrize('name,expected', [
        ('Crime Scene.PNG', 'Crime_Scene.png'),
        ('../../etc/passwd', 'passwd'),
        ('???.pdf', 'file.pdf'),
    ])
    def test_safe_filename(self, name, expected):
        assert safe_filename(name) == expected

    def test_public_url_default(self, app):
        with mock.patch.dict(app.config, {'S3_PUBLIC_BASE_URL': '', 'AWS_S3_BUCKET': 'case-files',
                                          'AWS_REGION': 'eu-west-1'}):
            assert aws_service.public_url('cases/1/a.png') == 'https://case-files.s3.eu-west-1.amazonaws.com/cases/1/a.png'


class TestUpload:
    """Uploading case files"""

    @mock.patch.object(aws_service, 's3_client')
    def test_upload(self, s3_client, app):
        url = upload_case_file(7, 'report.pdf', b'%PDF-1.4', 'application/pdf')
        assert url.startswith('https://files.example.test/cases/7/')

        kwargs = s3_client.return_value.put_object.call_args.kwargs
        assert kwargs['Bucket'] == 'test-case-files'
        assert kwargs['ContentType'] == 'application/pdf'
        assert kwargs['Key'].startswith('cases/7/')

    def test_rejects_empty_file(self, app):
        with pytest.raises(UnsupportedFileError):
            upload_case_file(7, 'a.txt', b'', 'text/plain')

    @mock.patch.object(aws_service, 's3_client')
    def test_s3_failure(self, s3_client, app):
        s3_client.return_value.put_object.side_effect = client_error('AccessDenied')
        with pytest.raises(StorageError, match='Upload failed'):
            upload_case_file(7, 'a.txt', b'hello', 'text/plain')


class TestEnsureBucket:
    """Bucket provisioning for init_db"""

    @mock.patch.object(aws_service, 's3_client')
    def test_existing_bucket(self, s3_client, app):
        assert 'already exists' in ensure_bucket()
        s3_client.return_value.create_bucket.assert_not_called()

    @mock.patch.object(aws_service, 's3_client')
    def test_creates_public_bucket(self, s3_client, app):
        s3 = s3_client.return_value
        s3.head_bucket.side_effect = client_error('404')

        with mock.patch.dict(app.config, {'AWS_REGION': 'us-east-1'}):
            assert 'created' in ensure_bucket()
        s3.create_bucket.assert_called_once_with(Bucket='test-case-files')
        assert 'test-case-files/*' in s3.put_bucket_policy.call_args.kwargs['Policy']

    @mock.patch.object(aws_service, 's3_client')
    def test_public_policy_is_valid_json(self, s3_client, app):
        s3 = s3_client.return_value
        s3.head_bucket.side_effect = client_error('NoSuchBucket')

        with mock.patch.dict(app.config, {'AWS_S3_BUCKET': 'evidence"room', 'AWS_REGION': 'us-east-1'}):
            ensure_bucket()

        policy = json.loads(s3.put_bucket_policy.call_args.kwargs['Policy'])
        statement = policy['Statement'][0]
        assert statement['Action'] == 's3:GetObject'
        assert statement['Resource'] == 'arn:aws:s3:::evidence"room/*'

    @mock.patch.object(aws_service, 's3_client')
    def test_forbidden(self, s3_client, app):
        s3_client.return_value.head_bucket.side_effect = client_error('403')
        with pytest.raises(StorageError, match='Could not check bucket'):
            ensure_bucket()
