"""
Leader election using Redis for the operator controllers.
Ensures only ONE replica watches and reconciles clusters at a time.
"""
from mongo_operator.config.logging import get_logger
from mongo_operator.config.redis import RedisConnection

logger = get_logger(__name__)

DEFAULT_LEADER_KEY = "mongo-operator:leader:controller"


class LeaderElection:
    """
    Simple leader election using Redis SET with NX and EX.

    Ensures only ONE pod runs the controllers even with multiple replicas.
    """

    def __init__(
        self,
        redis: RedisConnection,
        instance_id: str,
        lease_duration: int = 30,
        leader_key: str = DEFAULT_LEADER_KEY,
    ):
        """
        Initialize leader election.

        Args:
            redis: Connected Redis handle
            instance_id: Unique instance identifier
            lease_duration: Lease duration in seconds
            leader_key: Redis key holding the current leader's id
        """
        self.redis = redis
        self.instance_id = instance_id
        self.lease_duration = lease_duration
        self.leader_key = leader_key
        self.is_leader = False

    async def acquire_leadership(self) -> bool:
        """Try to acquire leadership."""
        client = self.redis.get_client()

        acquired = await client.set(
            self.leader_key,
            self.instance_id,
            nx=True,
            ex=self.lease_duration,
        )

        if acquired:
            if not self.is_leader:
                logger.info("leadership_acquired", instance_id=self.instance_id)
            self.is_leader = True
            return True

        # Check if we're already the leader
        current_leader = await client.get(self.leader_key)

        if current_leader == self.instance_id:
            self.is_leader = True
            return True

        if self.is_leader:
            logger.info("leadership_lost", instance_id=self.instance_id, current_leader=current_leader)

        self.is_leader = False
        return False

    async def renew_lease(self) -> bool:
        """Renew leadership lease."""
        if not self.is_leader:
            return False

        client = self.redis.get_client()
        current_leader = await client.get(self.leader_key)

        if current_leader == self.instance_id:
            await client.expire(self.leader_key, self.lease_duration)
            logger.debug("leadership_lease_renewed", instance_id=self.instance_id)
            return True

        logger.info("leadership_lost", instance_id=self.instance_id, current_leader=current_leader)
        self.is_leader = False
        return False

    async def release_leadership(self):
        """Release leadership (on shutdown)."""
        if not self.is_leader:
            return

        client = self.redis.get_client()
        current_leader = await client.get(self.leader_key)

        if current_leader == self.instance_id:
            await client.delete(self.leader_key)
            logger.info("leadership_released", instance_id=self.instance_id)

        self.is_leader = False
