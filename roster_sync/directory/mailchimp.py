"""
Mailchimp Marketing API integration.

This module implements the RemoteDirectoryBase interface for Mailchimp
audiences (lists). Members are addressed by their subscriber hash, the MD5
digest of the lower-cased email address. Tags are the membership markers the
reconciliation engine manages; merge fields hold the synchronized attributes.
"""

import hashlib
import logging
from typing import Dict, List, Any, Optional

from roster_sync.directory.base import RemoteDirectoryBase, DirectoryAPIError, DirectoryAuthenticationError
from roster_sync.directory.models import (
    MemberRequest,
    MemberStatus,
    RemoteList,
    RemoteMember,
    UpsertResult,
)
from roster_sync.retry import retry_call, is_retryable_error, create_retry_callback, MaxRetriesExceeded

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000

# Problem titles Mailchimp uses for addresses it will not accept
FORGOTTEN_EMAIL_TITLE = 'Forgotten Email Not Subscribed'
INVALID_RESOURCE_TITLE = 'Invalid Resource'
FAKE_OR_INVALID_DETAIL = 'looks fake or invalid'


def subscriber_hash(email: str) -> str:
    """Return Mailchimp's member identifier for an email address."""
    return hashlib.md5(email.lower().encode('utf-8')).hexdigest()


def data_center_from_api_key(api_key: str) -> str:
    """Extract the data centre (e.g. 'us6') from an API key of the form '<key>-us6'."""
    if not api_key or '-' not in api_key:
        raise DirectoryAuthenticationError("Mailchimp API key must end with the data centre, e.g. '...-us6'")
    return api_key.rsplit('-', 1)[1]


class MailchimpDirectory(RemoteDirectoryBase):
    """
    Mailchimp Marketing API v3 client.

    Configuration keys (the `directory` section):
        api_key: Mailchimp API key ('<key>-<dc>')
        base_url: Optional API root, derived from the key's data centre if omitted
        page_size: Records per page for list and member reads
        verify_ssl, truststore_file, truststore_type: HTTPS settings
        retry: max_retries / retry_wait_seconds / retry_backoff for transient failures
    """

    def __init__(self, config: Dict[str, Any]):
        config = dict(config)
        api_key = config.get('api_key', '')

        config.setdefault('name', 'Mailchimp')
        if not config.get('base_url'):
            config['base_url'] = f"https://{data_center_from_api_key(api_key)}.api.mailchimp.com/3.0"
        if api_key:
            # Mailchimp accepts any user name with the API key as the password
            config['auth'] = {'method': 'basic', 'username': 'roster-sync', 'password': api_key}

        super().__init__(config)

        self.page_size = int(config.get('page_size', DEFAULT_PAGE_SIZE))
        retry_config = config.get('retry', {})
        self.max_attempts = retry_config.get('max_retries', 3) + 1
        self.retry_wait = retry_config.get('retry_wait_seconds', 5)
        self.retry_backoff = retry_config.get('retry_backoff', 2.0)

        logger.info(f"Initialized Mailchimp directory client for {self.host}")

    def _call(self, method: str, path: str, body: Optional[Dict] = None,
              params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Issue a request, retrying transient failures (rate limiting, 5xx, network)."""
        try:
            return retry_call(
                self.request,
                args=(method, path),
                kwargs={'body': body, 'params': params},
                max_attempts=self.max_attempts,
                delay=self.retry_wait,
                backoff=self.retry_backoff,
                exceptions=(DirectoryAPIError,),
                on_retry=create_retry_callback(f"Mailchimp {method} {path}"),
                retry_if=is_retryable_error
            )
        except MaxRetriesExceeded as e:
            raise e.last_exception

    def _paged(self, path: str, collection: str, fields: str) -> List[Dict[str, Any]]:
        """Read every page of a collection endpoint."""
        items = []
        offset = 0
        while True:
            response = self._call('GET', path, params={
                'count': self.page_size,
                'offset': offset,
                'fields': f"{fields},total_items",
            })
            page = response.get(collection, [])
            items.extend(page)
            offset += len(page)

            total = response.get('total_items', 0)
            if not page or offset >= total:
                break
        return items

    def ping(self) -> bool:
        response = self._call('GET', '/ping')
        logger.debug(f"Mailchimp ping: {response.get('health_status')}")
        return True

    def list_all(self) -> List[RemoteList]:
        lists = self._paged('/lists', 'lists', 'lists.id,lists.name')
        logger.debug(f"Found {len(lists)} Mailchimp lists")
        return [RemoteList(id=item['id'], name=item.get('name', '')) for item in lists]

    def get_members(self, list_id: str) -> List[RemoteMember]:
        members = self._paged(
            f'/lists/{list_id}/members',
            'members',
            'members.email_address,members.status,members.tags,members.merge_fields'
        )
        logger.info(f"Retrieved {len(members)} members from list {list_id}")
        return [self._to_member(item) for item in members]

    def upsert_member(self, list_id: str, member: MemberRequest) -> UpsertResult:
        body = {
            'email_address': member.email,
            'status_if_new': member.status_if_new.value,
        }
        if member.attributes:
            body['merge_fields'] = dict(member.attributes)

        try:
            response = self._call('PUT', f'/lists/{list_id}/members/{subscriber_hash(member.email)}', body=body)
        except DirectoryAuthenticationError:
            raise
        except DirectoryAPIError as e:
            return self._classify_rejection(member.email, e)

        return UpsertResult.success(self._to_member(response) if response else None)

    def set_tag(self, list_id: str, email: str, tag_name: str, active: bool) -> None:
        body = {'tags': [{'name': tag_name, 'status': 'active' if active else 'inactive'}]}
        self._call('POST', f'/lists/{list_id}/members/{subscriber_hash(email)}/tags', body=body)
        logger.debug(f"{'Added' if active else 'Removed'} tag '{tag_name}' on {email}")

    def _classify_rejection(self, email: str, error: DirectoryAPIError) -> UpsertResult:
        if FORGOTTEN_EMAIL_TITLE in error.title:
            logger.warning(f"Mailchimp refused permanently deleted address {email}")
            return UpsertResult.rejected_deleted(error.detail)

        if INVALID_RESOURCE_TITLE in error.title and FAKE_OR_INVALID_DETAIL in error.detail:
            logger.warning(f"Mailchimp refused invalid address {email}")
            return UpsertResult.rejected_invalid(error.detail)

        logger.error(f"Mailchimp upsert failed for {email}: {error}")
        return UpsertResult.failed(str(error))

    @staticmethod
    def _to_member(data: Dict[str, Any]) -> RemoteMember:
        return RemoteMember(
            email=data.get('email_address', ''),
            status=MemberStatus.parse(data.get('status')),
            tags=frozenset(tag['name'] for tag in data.get('tags', []) if tag.get('name')),
            attributes=dict(data.get('merge_fields') or {})
        )
