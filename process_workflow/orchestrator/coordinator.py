"""
Join coordination using Redis Lua scripts.

Records branch completions atomically so that, when several branches of a
fork complete at the same time in different processes, exactly one caller
observes the join firing.
"""

import json
import logging
from typing import Optional

import redis.asyncio as redis

from process_workflow.core.models import JoinNodeConfig, JoinTimeoutAction, JoinType
from process_workflow.core.state_machine import JoinState

logger = logging.getLogger(__name__)


# Lua script for atomic branch completion
# Returns:  1 the join fired with this completion
#           0 still waiting (or duplicate completion)
#          -1 join not initialized
#          -2 join already settled
#          -3 branch is not an input of this join
JOIN_COMPLETE_SCRIPT = """
local state_key = KEYS[1]
local received_key = KEYS[2]
local branch_id = ARGV[1]
local ttl = tonumber(ARGV[2])

local state = redis.call("HGET", state_key, "state")
if not state then
    return -1
end
if state ~= "WAITING" then
    return -2
end

local expected = cjson.decode(redis.call("HGET", state_key, "expected"))
if #expected > 0 then
    local known = false
    for _, id in ipairs(expected) do
        if id == branch_id then
            known = true
            break
        end
    end
    if not known then
        return -3
    end
end

local added = redis.call("SADD", received_key, branch_id)
redis.call("EXPIRE", received_key, ttl)
if added == 0 then
    return 0  -- Duplicate completion
end

local required_count = tonumber(redis.call("HGET", state_key, "required_count"))
if redis.call("SCARD", received_key) < required_count then
    return 0
end

local required_ids = cjson.decode(redis.call("HGET", state_key, "required_ids"))
for _, id in ipairs(required_ids) do
    if redis.call("SISMEMBER", received_key, id) == 0 then
        return 0
    end
end

redis.call("HSET", state_key, "state", "FIRED")
return 1
"""

# Lua script for settling a waiting join on timeout
# Returns: 1 settled by this call, 0 already settled, -1 not initialized
JOIN_SETTLE_SCRIPT = """
local state = redis.call("HGET", KEYS[1], "state")
if not state then
    return -1
end
if state ~= "WAITING" then
    return 0
end
redis.call("HSET", KEYS[1], "state", ARGV[1])
return 1
"""


def join_requirements(
    config: JoinNodeConfig,
    expected_branches: list[str],
) -> tuple[int, list[str]]:
    """Completions needed and branch ids that must be among them."""
    expected = list(dict.fromkeys(expected_branches))
    required_ids = list(dict.fromkeys(config.required_branch_ids))
    if config.join_type == JoinType.AND:
        required_ids = list(dict.fromkeys([*expected, *required_ids]))
        return max(len(expected), 1), required_ids
    if config.join_type == JoinType.OR:
        return 1, required_ids
    return config.required_count or 1, required_ids


class JoinCoordinator:
    """
    Cross-process bookkeeping of join barriers.

    Uses Redis Lua scripts for atomic operations to prevent race conditions.
    """

    STATE_PREFIX = "pw:join:"
    RECEIVED_PREFIX = "pw:join_received:"

    def __init__(self, redis_client: redis.Redis, ttl_seconds: int = 30 * 24 * 3600):
        self.redis = redis_client
        self.ttl_seconds = ttl_seconds
        self._complete_script = None
        self._settle_script = None

    async def init(self) -> None:
        """Initialize Lua scripts."""
        self._complete_script = self.redis.register_script(JOIN_COMPLETE_SCRIPT)
        self._settle_script = self.redis.register_script(JOIN_SETTLE_SCRIPT)

    def _state_key(self, instance_id: str, node_id: str) -> str:
        return f"{self.STATE_PREFIX}{instance_id}:{node_id}"

    def _received_key(self, instance_id: str, node_id: str) -> str:
        return f"{self.RECEIVED_PREFIX}{instance_id}:{node_id}"

    async def initialize_join(
        self,
        instance_id: str,
        node_id: str,
        config: JoinNodeConfig,
        expected_branches: list[str],
    ) -> bool:
        """
        Create the barrier for a join in a process instance.

        Args:
            expected_branches: Branch ids the join waits for. For a join
                closing a fork, use `join_expected_branches` with the
                fork's activations so that only started branches count.

        Returns:
            False when the barrier already exists
        """
        state_key = self._state_key(instance_id, node_id)
        if await self.redis.exists(state_key):
            return False

        required_count, required_ids = join_requirements(config, expected_branches)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(state_key, mapping={
                "state": JoinState.WAITING.value,
                "join_type": config.join_type.value,
                "required_count": required_count,
                "required_ids": json.dumps(required_ids),
                "expected": json.dumps(list(dict.fromkeys(expected_branches))),
            })
            pipe.expire(state_key, self.ttl_seconds)
            await pipe.execute()

        logger.debug(
            f"Initialized join {node_id} for {instance_id}: "
            f"{required_count} completion(s) required"
        )
        return True

    async def branch_completed(self, instance_id: str, node_id: str, branch_id: str) -> bool:
        """
        Signal that a branch reached the join.

        Returns:
            True if this completion fired the join and downstream should run
        """
        if self._complete_script is None:
            await self.init()

        result = await self._complete_script(
            keys=[self._state_key(instance_id, node_id), self._received_key(instance_id, node_id)],
            args=[branch_id, self.ttl_seconds],
        )

        if result == 1:
            logger.info(f"Join {node_id} fired for {instance_id} on branch {branch_id}")
            return True
        if result == -1:
            logger.warning(f"Join {node_id} not initialized for {instance_id}")
        elif result == -2:
            logger.debug(f"Join {node_id} already settled; ignoring branch {branch_id}")
        elif result == -3:
            logger.warning(f"Branch {branch_id} is not an input of join {node_id}")
        else:
            logger.debug(f"Branch {branch_id} recorded at join {node_id}; still waiting")
        return False

    async def apply_timeout(
        self,
        instance_id: str,
        node_id: str,
        action: JoinTimeoutAction,
    ) -> Optional[JoinState]:
        """
        Settle a waiting join according to its timeout action.

        `notify` leaves the join waiting.
        """
        if action == JoinTimeoutAction.NOTIFY:
            logger.info(f"Join {node_id} timed out for {instance_id}; still waiting")
            return await self.get_state(instance_id, node_id)

        if self._settle_script is None:
            await self.init()

        target = JoinState.FIRED if action == JoinTimeoutAction.CONTINUE else JoinState.FAILED
        result = await self._settle_script(
            keys=[self._state_key(instance_id, node_id)],
            args=[target.value],
        )
        if result == 1:
            logger.info(f"Join {node_id} timed out for {instance_id}; now {target.value}")
            return target
        return await self.get_state(instance_id, node_id)

    async def get_state(self, instance_id: str, node_id: str) -> Optional[JoinState]:
        value = await self.redis.hget(self._state_key(instance_id, node_id), "state")
        return JoinState(value) if value else None

    async def get_received(self, instance_id: str, node_id: str) -> set[str]:
        return set(await self.redis.smembers(self._received_key(instance_id, node_id)))

    async def cleanup(self, instance_id: str, node_id: str) -> None:
        """Clean up join state once the runtime moved past the join."""
        await self.redis.delete(
            self._state_key(instance_id, node_id),
            self._received_key(instance_id, node_id),
        )
