"""DynamoDB store for monthly reservation records."""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import boto3
from boto3.dynamodb.types import TypeDeserializer, TypeSerializer
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError, ReadTimeoutError
from botocore.exceptions import ConnectionError as BotoConnectionError

from sync.cancellation import CancellationToken
from sync.errors import ClassifiedError, ErrorDomain
from sync.models import Change, ChangeKind, ChangeSet, SnapshotWindow, SourceRecord

logger = logging.getLogger(__name__)

AUTH_ERROR_CODES = {
    'UnrecognizedClientException',
    'AccessDeniedException',
    'ExpiredTokenException',
    'InvalidSignatureException',
    'MissingAuthenticationTokenException',
}

TRANSIENT_ERROR_CODES = {
    'ProvisionedThroughputExceededException',
    'ThrottlingException',
    'RequestLimitExceeded',
    'TransactionConflictException',
    'TransactionInProgressException',
    'TransactionCanceledException',
    'InternalServerError',
    'ServiceUnavailable',
}


def classify_boto_error(error: Exception, operation: str) -> ClassifiedError:
    """
    Map a botocore exception to a remote-sync ClassifiedError.

    Args:
        error: Exception raised by the boto3 client
        operation: Store operation being performed

    Returns:
        ClassifiedError in the remote-sync domain
    """
    if isinstance(error, ClientError):
        code = error.response.get('Error', {}).get('Code', 'Unknown')
        message = error.response.get('Error', {}).get('Message', str(error))
        if code in AUTH_ERROR_CODES:
            return ClassifiedError.remote_auth(operation, f"{code}: {message}")
        return ClassifiedError.remote_data(
            operation, f"{code}: {message}", retryable=code in TRANSIENT_ERROR_CODES
        )

    if isinstance(error, (BotoConnectionError, ReadTimeoutError)):
        return ClassifiedError.remote_connection(operation, str(error))

    return ClassifiedError.remote_data(operation, str(error), retryable=False)


class ReservationStore:
    """
    Remote store client for facility monthly reservations.

    Items are keyed by facility_id (hash) and period 'YYYY-MM' (range). One
    low-level boto3 client is shared by every worker thread; its connection
    pool is sized to the worker count.
    """

    TRANSACTION_LIMIT = 100  # DynamoDB TransactWriteItems limit

    def __init__(
        self,
        table_name: str,
        tenant_id: int = 1,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        max_connections: int = 4,
        timeout: float = 20.0,
        client: Any = None
    ):
        """
        Initialize the DynamoDB client.

        Args:
            table_name: Name of the DynamoDB table
            tenant_id: Tenant written on every item
            region_name: AWS region
            endpoint_url: Alternative endpoint (DynamoDB Local)
            max_connections: Size of the HTTP connection pool
            timeout: Read timeout for each request in seconds
            client: Preconfigured boto3 DynamoDB client
        """
        self.table_name = table_name
        self.tenant_id = tenant_id
        self.client = client or boto3.client(
            'dynamodb',
            region_name=region_name,
            endpoint_url=endpoint_url,
            config=Config(
                connect_timeout=5,
                read_timeout=timeout,
                max_pool_connections=max(max_connections, 1),
                retries={'max_attempts': 3, 'mode': 'standard'}
            )
        )
        self._serializer = TypeSerializer()
        self._deserializer = TypeDeserializer()
        logger.info(f"Initialized ReservationStore for table: {table_name}")

    def fetch_snapshot(
        self,
        window: SnapshotWindow,
        token: Optional[CancellationToken] = None
    ) -> List[SourceRecord]:
        """
        Retrieve the records of one facility for one year.

        Args:
            window: Facility/year to query
            token: Cancellation token checked between pages

        Returns:
            List of SourceRecord currently stored for the window

        Raises:
            ClassifiedError: remote-sync error on failure
        """
        params = {
            'TableName': self.table_name,
            'KeyConditionExpression': 'facility_id = :facility AND begins_with(period, :prefix)',
            'ExpressionAttributeValues': {
                ':facility': {'N': str(window.partition_key)},
                ':prefix': {'S': window.period_prefix},
            },
            'ConsistentRead': True,
        }
        records = []

        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled(ErrorDomain.REMOTE_SYNC)
                response = self.client.query(**params)
                for item in response.get('Items', []):
                    record = self._item_to_record(item)
                    if record:
                        records.append(record)

                # Handle pagination
                if 'LastEvaluatedKey' not in response:
                    break
                params['ExclusiveStartKey'] = response['LastEvaluatedKey']
        except (ClientError, BotoCoreError) as e:
            raise classify_boto_error(e, 'fetch_snapshot') from e

        logger.debug(
            f"Retrieved {len(records)} records for facility {window.partition_key} "
            f"year {window.year}"
        )
        return records

    def apply_change(self, change: Change) -> None:
        """
        Apply a single change as one put or delete request.

        Args:
            change: Change to apply

        Raises:
            ClassifiedError: remote-sync error on failure
        """
        try:
            if change.kind is ChangeKind.DELETE:
                self.client.delete_item(TableName=self.table_name, Key=self._key(change))
            else:
                self.client.put_item(
                    TableName=self.table_name, Item=self._record_to_item(change.after)
                )
        except (ClientError, BotoCoreError) as e:
            raise classify_boto_error(e, f"apply_change:{change.kind.value}") from e

    def apply_change_set(
        self,
        change_set: ChangeSet,
        token: Optional[CancellationToken] = None
    ) -> int:
        """
        Apply every change of a set atomically.

        The whole set is written in one TransactWriteItems call, so either
        every change lands or none does. The cancellation token is checked
        immediately before the request is sent.

        Args:
            change_set: Ordered changes for one source file
            token: Cancellation token

        Returns:
            Number of changes applied

        Raises:
            ClassifiedError: remote-sync error on failure; sets larger than
                the transaction limit are rejected without retry
        """
        if change_set.is_empty:
            return 0

        if len(change_set) > self.TRANSACTION_LIMIT:
            raise ClassifiedError.remote_data(
                'apply_change_set',
                f"{len(change_set)} changes exceed the transaction limit of "
                f"{self.TRANSACTION_LIMIT}",
                retryable=False
            )

        if token is not None:
            token.raise_if_cancelled(ErrorDomain.REMOTE_SYNC)

        if len(change_set) == 1:
            self.apply_change(change_set.changes[0])
            return 1

        operations = []
        for change in change_set:
            if change.kind is ChangeKind.DELETE:
                operations.append({
                    'Delete': {'TableName': self.table_name, 'Key': self._key(change)}
                })
            else:
                operations.append({
                    'Put': {
                        'TableName': self.table_name,
                        'Item': self._record_to_item(change.after)
                    }
                })

        try:
            self.client.transact_write_items(TransactItems=operations)
        except (ClientError, BotoCoreError) as e:
            raise classify_boto_error(e, 'apply_change_set') from e

        logger.info(
            f"Applied {len(change_set)} changes: {change_set.inserts} inserted, "
            f"{change_set.updates} updated, {change_set.deletes} deleted"
        )
        return len(change_set)

    def close(self) -> None:
        """Release pooled HTTP connections."""
        close = getattr(self.client, 'close', None)
        if close is not None:
            close()
            logger.info(f"Closed ReservationStore client for table: {self.table_name}")

    def _key(self, change: Change) -> Dict[str, Dict[str, str]]:
        partition_key, year, month = change.key
        return {
            'facility_id': {'N': str(partition_key)},
            'period': {'S': f"{year:04d}-{month:02d}"},
        }

    def _record_to_item(self, record: SourceRecord) -> Dict[str, Any]:
        """
        Convert a SourceRecord to a DynamoDB item in wire format.

        Args:
            record: Record to store

        Returns:
            Item with type descriptors
        """
        item = {
            'facility_id': record.partition_key,
            'period': record.period,
            'tenant_id': self.tenant_id,
            'year': record.year,
            'month': record.month,
            'slots': record.counts(),
            'updated_at': datetime.now(timezone.utc).isoformat(),
        }
        return {name: self._serializer.serialize(value) for name, value in item.items()}

    def _item_to_record(self, item: Dict[str, Any]) -> Optional[SourceRecord]:
        """
        Convert a DynamoDB item to a SourceRecord.

        Args:
            item: Item with type descriptors

        Returns:
            SourceRecord or None if conversion fails
        """
        try:
            data = {name: self._deserializer.deserialize(value) for name, value in item.items()}
            counts = {
                slot: int(count)
                for slot, count in data['slots'].items()
            }
            return SourceRecord.build(
                partition_key=int(data['facility_id']),
                year=int(data['year']),
                month=int(data['month']),
                counts=counts
            )
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to convert item to SourceRecord: {e}")
            return None
