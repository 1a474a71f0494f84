import logging
from datetime import datetime, timezone

from botocore.exceptions import ClientError

logger = logging.getLogger(__name__)

ITN_PREFIX = "ITN#"
STAGES_SK = "STAGES"

PROFILE_STAGE = "profile"
BIOME_STAGE = "biome"
COMPLETED_STAGE = "completed"


class IdempotencyLedger:
    """
    Per-notification stage markers, keyed by the gateway transaction id.

    A stage is marked only after its totals write succeeded, so a redelivered
    notification can skip the accumulations that already happened.
    """

    def __init__(self, table):
        self.table = table

    @staticmethod
    def _key(transaction_id: str) -> dict:
        return {"PK": f"{ITN_PREFIX}{transaction_id}", "SK": STAGES_SK}

    def get_stages(self, transaction_id: str) -> dict:
        response = self.table.get_item(Key=self._key(transaction_id))
        return response.get("Item", {})

    def is_stage_done(self, transaction_id: str, stage: str) -> bool:
        return f"{stage}_at" in self.get_stages(transaction_id)

    def mark_stage(self, transaction_id: str, stage: str, **attributes) -> bool:
        """Returns False when the stage was already marked."""
        names = {"#stage": f"{stage}_at"}
        values = {":now": datetime.now(timezone.utc).isoformat()}
        assignments = ["#stage = :now"]
        for index, (name, value) in enumerate(attributes.items()):
            names[f"#a{index}"] = name
            values[f":a{index}"] = value
            assignments.append(f"#a{index} = :a{index}")

        try:
            self.table.update_item(
                Key=self._key(transaction_id),
                UpdateExpression="SET " + ", ".join(assignments),
                ConditionExpression="attribute_not_exists(#stage)",
                ExpressionAttributeNames=names,
                ExpressionAttributeValues=values,
            )
            return True
        except ClientError as e:
            if e.response['Error']['Code'] == 'ConditionalCheckFailedException':
                logger.info(f"Idempotency check: {transaction_id} stage {stage} is already marked.")
                return False
            logger.error(f"Error marking stage {stage} for {transaction_id}: {e}")
            raise
