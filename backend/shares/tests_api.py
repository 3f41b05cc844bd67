"""
API Tests for One-Time Shares
=============================
Tests cover:
- Upload (owner header, size limit, missing file)
- One-time download (success, reuse, forged ids and tokens, expiry)
- Response hardening headers
- Owner-scoped listing and state filters
- Custody stats and health endpoints
"""

import shutil
import tempfile
from datetime import timedelta
from unittest.mock import patch

from django.core.files.uploadedfile import SimpleUploadedFile
from django.test import override_settings
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APITestCase

from contracts.models import CustodyRecord


TEST_STORAGE_ROOT = tempfile.mkdtemp()


@override_settings(SHARE_STORAGE_ROOT=TEST_STORAGE_ROOT, SHARE_BASE_URL='')
class ShareAPITestBase(APITestCase):

    owner = 'owner-1'

    @classmethod
    def tearDownClass(cls):
        super().tearDownClass()
        shutil.rmtree(TEST_STORAGE_ROOT, ignore_errors=True)

    def setUp(self):
        patcher = patch('shares.tasks.delete_blob.delay')
        self.delete_delay = patcher.start()
        self.addCleanup(patcher.stop)

    def _upload(self, content=b'0123456789', filename='notes.txt', content_type='text/plain', owner=None):
        file_obj = SimpleUploadedFile(filename, content, content_type=content_type)
        return self.client.post(
            '/api/shares/',
            {'file': file_obj},
            format='multipart',
            HTTP_X_OWNER_ID=owner or self.owner,
        )

    def _download(self, record_id, token):
        params = {'t': token} if token is not None else {}
        return self.client.get(f'/d/{record_id}', params)

    def _body(self, response):
        body = b''.join(response.streaming_content)
        if not response.closed:
            response.close()
        return body


class UploadAPITests(ShareAPITestBase):

    def test_upload_issues_link(self):
        response = self._upload()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        data = response.data
        self.assertEqual(data['original_name'], 'notes.txt')
        self.assertEqual(data['size_bytes'], 10)
        self.assertEqual(data['state'], 'active')
        self.assertTrue(data['token'])
        self.assertTrue(data['download_url'].endswith(f"/d/{data['id']}?t={data['token']}"))
        self.assertEqual(response['Cache-Control'], 'no-store')

    def test_upload_never_exposes_hash_or_salt(self):
        response = self._upload()

        self.assertNotIn('token_hash', response.data)
        self.assertNotIn('token_salt', response.data)
        self.assertNotIn('storage_location', response.data)

    @override_settings(SHARE_BASE_URL='https://share.example.com/')
    def test_download_url_uses_configured_base(self):
        response = self._upload()

        self.assertTrue(response.data['download_url'].startswith('https://share.example.com/d/'))

    def test_upload_without_owner_is_rejected(self):
        file_obj = SimpleUploadedFile('notes.txt', b'data')

        response = self.client.post('/api/shares/', {'file': file_obj}, format='multipart')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)
        self.assertEqual(CustodyRecord.objects.count(), 0)

    def test_upload_without_file(self):
        response = self.client.post('/api/shares/', {}, format='multipart', HTTP_X_OWNER_ID=self.owner)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    @override_settings(SHARE_MAX_UPLOAD_BYTES=5)
    def test_upload_too_large(self):
        response = self._upload(content=b'0123456789')

        self.assertEqual(response.status_code, status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)
        self.assertEqual(response.data['details']['max_size'], 5)
        self.assertEqual(CustodyRecord.objects.count(), 0)

    def test_upload_strips_client_path(self):
        response = self._upload(filename='../../etc/passwd')

        self.assertEqual(response.data['original_name'], 'passwd')


class DownloadAPITests(ShareAPITestBase):

    def setUp(self):
        super().setUp()
        upload = self._upload(content=b'secret payload', filename='report.txt')
        self.record_id = upload.data['id']
        self.token = upload.data['token']

    def test_first_download_serves_file(self):
        response = self._download(self.record_id, self.token)

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self._body(response), b'secret payload')
        self.assertIn('attachment', response['Content-Disposition'])
        self.assertIn('report.txt', response['Content-Disposition'])
        self.assertEqual(response['Content-Length'], str(len(b'secret payload')))
        self.assertEqual(response['Cache-Control'], 'no-store')
        self.assertEqual(response['X-Content-Type-Options'], 'nosniff')
        self.delete_delay.assert_called_once()

    def test_second_download_is_gone(self):
        self._body(self._download(self.record_id, self.token))

        response = self._download(self.record_id, self.token)

        self.assertEqual(response.status_code, 410)
        self.assertEqual(response.content.decode(), "This download link is no longer valid.")
        self.assertEqual(response['Cache-Control'], 'no-store')

    def test_wrong_token_is_not_found(self):
        response = self._download(self.record_id, self.token[:-1] + ('A' if self.token[-1] != 'A' else 'B'))

        self.assertEqual(response.status_code, 404)
        # A forged token must not burn the link
        self.assertEqual(self._download(self.record_id, self.token).status_code, 200)

    def test_unknown_id_is_not_found(self):
        response = self._download('00000000-0000-0000-0000-000000000000', self.token)

        self.assertEqual(response.status_code, 404)

    def test_unknown_id_and_wrong_token_look_the_same(self):
        unknown = self._download('00000000-0000-0000-0000-000000000000', self.token)
        forged = self._download(self.record_id, 'forged-token')

        self.assertEqual(unknown.status_code, forged.status_code)
        self.assertEqual(unknown.content, forged.content)

    def test_missing_token_is_not_found(self):
        response = self._download(self.record_id, None)

        self.assertEqual(response.status_code, 404)

    def test_expired_link_is_gone(self):
        CustodyRecord.objects.filter(id=self.record_id).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )

        response = self._download(self.record_id, self.token)

        self.assertEqual(response.status_code, 410)
        self.assertEqual(CustodyRecord.objects.get(id=self.record_id).token_consumed_at, None)

    def test_used_and_expired_render_identically(self):
        other = self._upload(filename='other.txt').data
        CustodyRecord.objects.filter(id=other['id']).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )
        self._body(self._download(self.record_id, self.token))

        used = self._download(self.record_id, self.token)
        expired = self._download(other['id'], other['token'])

        self.assertEqual(used.status_code, expired.status_code)
        self.assertEqual(used.content, expired.content)

    def test_post_not_allowed(self):
        response = self.client.post(f'/d/{self.record_id}?t={self.token}')

        self.assertEqual(response.status_code, 405)


class ShareListAPITests(ShareAPITestBase):

    def test_list_is_scoped_to_owner(self):
        self._upload(filename='mine.txt')
        self._upload(filename='theirs.txt', owner='owner-2')

        response = self.client.get('/api/shares/', HTTP_X_OWNER_ID=self.owner)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        names = [r['original_name'] for r in response.data['results']]
        self.assertEqual(names, ['mine.txt'])

    def test_list_without_owner_is_rejected(self):
        response = self.client.get('/api/shares/')

        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_list_never_exposes_tokens(self):
        self._upload()

        response = self.client.get('/api/shares/', HTTP_X_OWNER_ID=self.owner)

        record = response.data['results'][0]
        self.assertNotIn('token', record)
        self.assertNotIn('token_hash', record)

    def test_filter_by_state(self):
        used = self._upload(filename='used.txt').data
        self._upload(filename='waiting.txt')
        self._body(self._download(used['id'], used['token']))

        active = self.client.get('/api/shares/', {'state': 'active'}, HTTP_X_OWNER_ID=self.owner)
        consumed = self.client.get('/api/shares/', {'state': 'consumed'}, HTTP_X_OWNER_ID=self.owner)
        expired = self.client.get('/api/shares/', {'state': 'expired'}, HTTP_X_OWNER_ID=self.owner)

        self.assertEqual([r['original_name'] for r in active.data['results']], ['waiting.txt'])
        self.assertEqual([r['original_name'] for r in consumed.data['results']], ['used.txt'])
        self.assertEqual(expired.data['results'], [])

    def test_filter_by_search(self):
        self._upload(filename='Annual_Report.txt')
        self._upload(filename='notes.txt')

        response = self.client.get('/api/shares/', {'search': 'report'}, HTTP_X_OWNER_ID=self.owner)

        self.assertEqual(response.data['count'], 1)

    def test_past_deadline_record_lists_as_expired_before_any_sweep(self):
        stale = self._upload(filename='stale.txt').data
        self._upload(filename='fresh.txt')
        CustodyRecord.objects.filter(id=stale['id']).update(expires_at=timezone.now() - timedelta(minutes=1))

        active = self.client.get('/api/shares/', {'state': 'active'}, HTTP_X_OWNER_ID=self.owner)
        expired = self.client.get('/api/shares/', {'state': 'expired'}, HTTP_X_OWNER_ID=self.owner)

        self.assertEqual([r['original_name'] for r in active.data['results']], ['fresh.txt'])
        self.assertEqual([r['original_name'] for r in expired.data['results']], ['stale.txt'])
        self.assertEqual(expired.data['results'][0]['state'], CustodyRecord.State.EXPIRED)
        self.assertIsNone(CustodyRecord.objects.get(id=stale['id']).deleted_at)

    def test_invalid_state_is_rejected(self):
        response = self.client.get('/api/shares/', {'state': 'bogus'}, HTTP_X_OWNER_ID=self.owner)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class StatsAndHealthAPITests(ShareAPITestBase):

    def test_custody_stats(self):
        used = self._upload(content=b'1234').data
        self._upload(content=b'123456')
        self._body(self._download(used['id'], used['token']))

        response = self.client.get('/api/stats/custody/')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['total_records'], 2)
        self.assertEqual(response.data['active_records'], 1)
        self.assertEqual(response.data['consumed_records'], 1)
        self.assertEqual(response.data['expired_records'], 0)
        self.assertEqual(response.data['active_size_bytes'], 6)
        self.assertIn('timestamp', response.data)

    def test_custody_stats_count_unswept_past_deadline_as_expired(self):
        stale = self._upload(content=b'1234').data
        self._upload(content=b'123456')
        CustodyRecord.objects.filter(id=stale['id']).update(expires_at=timezone.now() - timedelta(minutes=1))

        response = self.client.get('/api/stats/custody/')

        self.assertEqual(response.data['active_records'], 1)
        self.assertEqual(response.data['expired_records'], 1)
        self.assertEqual(response.data['pending_expiry'], 1)
        self.assertEqual(response.data['active_size_bytes'], 6)

    def test_custody_stats_empty(self):
        response = self.client.get('/api/stats/custody/')

        self.assertEqual(response.data['total_records'], 0)
        self.assertEqual(response.data['active_size_bytes'], 0)

    def test_health_live(self):
        for path in ('/health', '/health/live'):
            response = self.client.get(path)
            self.assertEqual(response.status_code, status.HTTP_200_OK)
            self.assertEqual(response.data['status'], 'healthy')

    def test_health_ready(self):
        response = self.client.get('/health/ready')

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['checks']['database'], 'healthy')
