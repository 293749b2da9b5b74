"""
DynamoDB implementation of the conditional-write store.

Single updates go through `Table.update_item` with a ConditionExpression;
multi-record writes go through `transact_write_items` so that a submission and
its engagement (or a payment and its engagement) commit together or not at all.
"""
from typing import Any, Dict, List, Optional, Tuple

import boto3
from boto3.dynamodb.conditions import Attr, Key
from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from .config import config
from .errors import ExternalCollaboratorError
from .logging import logger
from .store import (
    KEY_NAMES,
    AtMost,
    ConditionFailed,
    OneOf,
    Present,
    Put,
    Store,
    index_names,
    physical_table_names,
)

CONDITION_FAILURE_CODES = ('ConditionalCheckFailedException', 'TransactionCanceledException')

_serializer = TypeSerializer()


def build_update(
    key_name: str,
    set_values: Dict[str, Any],
    expected: Optional[Dict[str, Any]] = None,
    append: Optional[Dict[str, List[Any]]] = None,
) -> Tuple[str, str, Dict[str, str], Dict[str, Any]]:
    """
    Build UpdateExpression, ConditionExpression and the attribute maps.

    Every attribute goes through a #name placeholder because several of ours
    (status, version) are DynamoDB reserved words.
    """
    names: Dict[str, str] = {'#pk': key_name}
    values: Dict[str, Any] = {}
    set_clauses = []
    conditions = ['attribute_exists(#pk)']

    for i, (attr, value) in enumerate(set_values.items()):
        names[f'#s{i}'] = attr
        values[f':s{i}'] = value
        set_clauses.append(f'#s{i} = :s{i}')

    if append:
        values[':empty'] = []
        for i, (attr, entries) in enumerate(append.items()):
            names[f'#a{i}'] = attr
            values[f':a{i}'] = list(entries)
            set_clauses.append(f'#a{i} = list_append(if_not_exists(#a{i}, :empty), :a{i})')

    for i, (attr, want) in enumerate((expected or {}).items()):
        names[f'#c{i}'] = attr
        if isinstance(want, OneOf):
            placeholders = []
            for j, option in enumerate(want.values):
                values[f':c{i}_{j}'] = option
                placeholders.append(f':c{i}_{j}')
            conditions.append(f"#c{i} IN ({', '.join(placeholders)})")
        elif want is None:
            values[':null'] = None
            conditions.append(f'(attribute_not_exists(#c{i}) OR #c{i} = :null)')
        else:
            values[f':c{i}'] = want
            conditions.append(f'#c{i} = :c{i}')

    update_expression = 'SET ' + ', '.join(set_clauses)
    condition_expression = ' AND '.join(conditions)
    return update_expression, condition_expression, names, values


def _is_condition_failure(error: ClientError) -> bool:
    return error.response.get('Error', {}).get('Code') in CONDITION_FAILURE_CODES


class DynamoStore(Store):
    """Store backed by DynamoDB tables named in config."""

    def __init__(self, resource=None):
        self.dynamodb = resource or boto3.resource('dynamodb', region_name=config.AWS_REGION)
        self.tables = physical_table_names()
        self.indexes = index_names()

    def _table(self, table: str):
        return self.dynamodb.Table(self.tables[table])

    def get(self, table, key):
        try:
            response = self._table(table).get_item(
                Key={KEY_NAMES[table]: key},
                ConsistentRead=True
            )
            return response.get('Item')
        except ClientError as e:
            logger.error(f"Error getting {key} from {self.tables[table]}: {e}")
            raise ExternalCollaboratorError(f"Storage unavailable reading {table}") from e

    def put_new(self, table, item):
        key_name = KEY_NAMES[table]
        try:
            self._table(table).put_item(
                Item=item,
                ConditionExpression='attribute_not_exists(#pk)',
                ExpressionAttributeNames={'#pk': key_name}
            )
        except ClientError as e:
            if _is_condition_failure(e):
                raise ConditionFailed(f"{table}/{item[key_name]} already exists") from e
            logger.error(f"Error putting item into {self.tables[table]}: {e}")
            raise ExternalCollaboratorError(f"Storage unavailable writing {table}") from e

    def update(self, table, key, set, expected=None, append=None):
        key_name = KEY_NAMES[table]
        update_expression, condition_expression, names, values = build_update(
            key_name, set, expected, append
        )
        try:
            response = self._table(table).update_item(
                Key={key_name: key},
                UpdateExpression=update_expression,
                ConditionExpression=condition_expression,
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
                ReturnValues='ALL_NEW'
            )
            return response.get('Attributes', {})
        except ClientError as e:
            if _is_condition_failure(e):
                raise ConditionFailed(f"{table}/{key} did not match {expected!r}") from e
            logger.error(f"Error updating {key} in {self.tables[table]}: {e}")
            raise ExternalCollaboratorError(f"Storage unavailable writing {table}") from e

    def transact(self, operations):
        transact_items = [self._transact_item(op) for op in operations]
        try:
            self.dynamodb.meta.client.transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            if _is_condition_failure(e):
                reasons = e.response.get('CancellationReasons', [])
                raise ConditionFailed(f"Transaction cancelled: {reasons}") from e
            logger.error(f"Transaction error: {e}")
            raise ExternalCollaboratorError('Storage unavailable during transaction') from e

    def _transact_item(self, op) -> Dict[str, Any]:
        key_name = KEY_NAMES[op.table]
        table_name = self.tables[op.table]

        if isinstance(op, Put):
            return {
                'Put': {
                    'TableName': table_name,
                    'Item': {k: _serializer.serialize(v) for k, v in op.item.items()},
                    'ConditionExpression': 'attribute_not_exists(#pk)',
                    'ExpressionAttributeNames': {'#pk': key_name},
                }
            }

        update_expression, condition_expression, names, values = build_update(
            key_name, op.set, op.expected, op.append
        )
        return {
            'Update': {
                'TableName': table_name,
                'Key': {key_name: _serializer.serialize(op.key)},
                'UpdateExpression': update_expression,
                'ConditionExpression': condition_expression,
                'ExpressionAttributeNames': names,
                'ExpressionAttributeValues': {k: _serializer.serialize(v) for k, v in values.items()},
            }
        }

    def query(self, table, attr, value):
        try:
            params = {
                'IndexName': self.indexes[(table, attr)],
                'KeyConditionExpression': Key(attr).eq(value),
            }
            items = []
            while True:
                response = self._table(table).query(**params)
                items.extend(response.get('Items', []))
                if 'LastEvaluatedKey' not in response:
                    return items
                params['ExclusiveStartKey'] = response['LastEvaluatedKey']
        except ClientError as e:
            logger.error(f"Error querying {self.tables[table]} by {attr}: {e}")
            raise ExternalCollaboratorError(f"Storage unavailable querying {table}") from e

    def scan(self, table, filters):
        # In production, use a GSI on the filtered attribute for efficiency
        expression = None
        for attr, want in filters.items():
            if isinstance(want, AtMost):
                clause = Attr(attr).lte(want.value)
            elif isinstance(want, Present):
                clause = Attr(attr).exists() & Attr(attr).ne(None)
            elif isinstance(want, OneOf):
                clause = Attr(attr).is_in(want.values)
            else:
                clause = Attr(attr).eq(want)
            expression = clause if expression is None else expression & clause

        try:
            params = {}
            if expression is not None:
                params['FilterExpression'] = expression
            items = []
            while True:
                response = self._table(table).scan(**params)
                items.extend(response.get('Items', []))
                if 'LastEvaluatedKey' not in response:
                    return items
                params['ExclusiveStartKey'] = response['LastEvaluatedKey']
        except ClientError as e:
            logger.error(f"Error scanning {self.tables[table]}: {e}")
            raise ExternalCollaboratorError(f"Storage unavailable scanning {table}") from e
