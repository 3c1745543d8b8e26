# Atomic Redis Lua scripts. Each one is a single indivisible step for the
# operations where two workers must never observe the same outcome.

RESERVE_JOB_LUA = r"""
-- KEYS[1] = queue_unprocessed (list)
-- KEYS[2] = queue_running (hash)
-- ARGV[1] = worker_id

local job = redis.call('lpop', KEYS[1])
if job then
  redis.call('hset', KEYS[2], ARGV[1], job)
  return job
end
return false
"""

# Scans for dead workers and puts the job of the first one holding a job
# back at the head of the queue. Dead workers scanned along the way are
# evicted from the heartbeat set.
REQUEUE_LOST_JOB_LUA = r"""
-- KEYS[1] = worker_heartbeats (zset)
-- KEYS[2] = queue_running (hash)
-- KEYS[3] = queue_unprocessed (list)
-- KEYS[4] = queue_lost (zset)
-- ARGV[1] = now (seconds)
-- ARGV[2] = liveness window (seconds)

local cutoff = tonumber(ARGV[1]) - tonumber(ARGV[2])
local dead_workers = redis.call('zrangebyscore', KEYS[1], '-inf', tostring(cutoff))

for _, worker in ipairs(dead_workers) do
  redis.call('zrem', KEYS[1], worker)
  local job = redis.call('hget', KEYS[2], worker)
  if job then
    redis.call('lpush', KEYS[3], job)
    redis.call('hdel', KEYS[2], worker)
    redis.call('zincrby', KEYS[4], 1, job)
    return {job, worker}
  end
end

return false
"""

REQUEUE_JOB_LUA = r"""
-- KEYS[1] = queue_unprocessed (list)
-- KEYS[2] = requeues (hash)
-- KEYS[3] = requeued_job_original_worker (hash)
-- KEYS[4] = job_location (hash)
-- ARGV[1] = job
-- ARGV[2] = max_requeues
-- ARGV[3] = original worker
-- ARGV[4] = location

local job = ARGV[1]
local max_requeues = tonumber(ARGV[2])
local requeued_times = tonumber(redis.call('hget', KEYS[2], job) or '0')

if requeued_times >= max_requeues then
  return false
end

redis.call('lpush', KEYS[1], job)
redis.call('hincrby', KEYS[2], job, 1)
redis.call('hset', KEYS[3], job, ARGV[3])
if ARGV[4] ~= '' then
  redis.call('hset', KEYS[4], job, ARGV[4])
end

return 1
"""

REMOVE_WORKER_LUA = r"""
-- KEYS[1] = queue_unprocessed (list)
-- KEYS[2] = worker_heartbeats (zset)
-- KEYS[3] = queue_running (hash)
-- KEYS[4] = workers_withdrawn (hash)
-- ARGV[1] = worker_id

local worker = ARGV[1]
local job = redis.call('hget', KEYS[3], worker)

redis.call('zrem', KEYS[2], worker)

if job then
  redis.call('lpush', KEYS[1], job)
  redis.call('hdel', KEYS[3], worker)
  redis.call('hincrby', KEYS[4], worker, 1)
  return 1
end

return false
"""

BECOME_LEADER_LUA = r"""
-- KEYS[1] = queue_status (string)
-- KEYS[2] = elected_master_at (string)
-- ARGV[1] = initializing status value
-- ARGV[2] = now (seconds)

if redis.call('setnx', KEYS[1], ARGV[1]) == 1 then
  redis.call('setnx', KEYS[2], ARGV[2])
  return 1
end
return false
"""
