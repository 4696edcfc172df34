#!/usr/bin/env python3

"""
Kafka -> A2A task consumer

Key properties
----------
- At least once delivery with manual, synchronous commits
- Per-partition, in-order processing (1 worker thread per assigned partition)
- A record is acknowledged only once its task was submitted; a withheld ack holds the partition's commit point at that
  record so it is redelivered after a rebalance or restart
- Bounded queues + dynamic pause/resume for backpressure
- Cooperative rebalancing
- Graceful shutdown: in-flight records get a grace period, then a final commit

Dependencies
----------
- confluent-kafka
- requests (A2A HTTP task backend)

Run
----------
export KAFKA_BOOTSTRAP="localhost:9092"
export KAFKA_GROUP_ID="a2a-group"
export KAFKA_TOPICS="orders,payments,alerts"
export TASK_BACKEND="local"          # or "http" with A2A_SERVER_URL

python -m a2a_kafka.consumer
"""

import os
import signal
import logging
import time
import threading
import queue
from typing import Dict, Tuple, Optional, List, Set

from confluent_kafka import Consumer, KafkaError, TopicPartition

from .a2a_http import HttpTaskClient
from .actions import default_registry
from .dispatcher import TaskDispatcher
from .task_client import LocalTaskClient, TaskClient
from .topic_consumer import MESSAGE_TYPES, Record, TopicConsumer


# ---------- Config ----------
BOOTSTRAP = os.getenv("KAFKA_BOOTSTRAP", "localhost:9092")
TOPICS = [t.strip() for t in os.getenv("KAFKA_TOPICS", "orders,payments,alerts").split(",") if t.strip()]
GROUP_ID = os.getenv("KAFKA_GROUP_ID", "a2a-group")

CLIENT_ID = os.getenv("CLIENT_ID", "a2a-kafka-consumer/1.0")

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
AUTO_OFFSET_RESET = os.getenv("AUTO_OFFSET_RESET", "earliest")                    # earliest / latest
MAX_POLL_INTERVAL = int(os.getenv("MAX_POLL_INTERVAL", "300000"))                 # 5 mins
SESSION_TIMEOUT_MS = int(os.getenv("SESSION_TIMEOUT_MS", "15000"))
STAT_INTERVAL_MS = int(os.getenv("STAT_INTERVAL_MS", "0"))                        # 0 to disable

# Backpressure and commit tuning
PARTITION_QUEUE_MAX = int(os.getenv("PARTITION_QUEUE_MAX", "100"))                # max buffered msgs per partition
POLL_TIMEOUT_S = float(os.getenv("POLL_TIMEOUT_S", "1.0"))
COMMIT_EVERY_MSGS = int(os.getenv("COMMIT_EVERY_MSGS", "1"))                      # commit after N acknowledged
COMMIT_EVERY_SECS = int(os.getenv("COMMIT_EVERY_SECS", "5"))                      # or after T seconds, whichever comes first
SHUTDOWN_GRACE_S = float(os.getenv("SHUTDOWN_GRACE_S", "10"))

# Task backend
TASK_BACKEND = os.getenv("TASK_BACKEND", "local").lower()                         # local / http
TASK_RESULT_TIMEOUT_S = float(os.getenv("TASK_RESULT_TIMEOUT_S", "5"))
LOCAL_TASK_WORKERS = int(os.getenv("LOCAL_TASK_WORKERS", "4"))
LOCAL_MAX_FINISHED_TASKS = int(os.getenv("LOCAL_MAX_FINISHED_TASKS", "1000"))            # finished tasks kept for lookup

# Security
SASL_MECHANISM = os.getenv("SASL_MECHANISM")                                      # e.g. "PLAIN", "SCRAM-SHA-512"
SASL_USERNAME = os.getenv("SASL_USERNAME")
SASL_PASSWORD = os.getenv("SASL_PASSWORD")
SSL_CA_LOCATION = os.getenv("SSL_CA_LOCATION")                                    # path to CA bundle

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(threadName)s %(message)s")
log = logging.getLogger("consumer")


# ---------- Task backend ----------
def create_task_client(backend: str = TASK_BACKEND) -> TaskClient:
    """
    Build the process-wide task client selected by TASK_BACKEND

    The caller owns its lifecycle (`start()` at startup, `close()` at shutdown)
    """
    if backend == "local":
        return LocalTaskClient(default_registry(), max_workers=LOCAL_TASK_WORKERS, max_finished=LOCAL_MAX_FINISHED_TASKS)
    if backend == "http":
        return HttpTaskClient()
    raise ValueError(f"Unknown TASK_BACKEND {backend!r}; expected 'local' or 'http'")


# ---------- Commit tracking ----------
class CommitTracker:
    """
    Tracks the committable offset per (topic, partition) and decides when to commit - Thread-safe

    What it does
    ----------
    - `mark_processed` advances (topic, partition) -> next_offset_to_commit for acknowledged records
    - `hold` pins a partition at the first unacknowledged offset: the committable offset never moves past it, even if
      later records of that partition are acknowledged
    - Aggregates commit cadence signals (by count and by time)
    - Produces TopicPartition snapshots for synchronous commits
    - Only tracks assigned partitions: marks for a partition that was revoked (a late ack from a stopping worker)
      are ignored so we never commit for a partition another member owns
    - Numbers each assignment of a partition; marks stamped with an older generation (a worker from a previous
      assignment that outlived its grace period) are ignored after the partition is assigned again

    Why "next" offset?
    ----------
    Kafka commits the offset of the *next* message the group should read. After acknowledging offset N we commit N+1;
    after withholding the ack of offset N we commit N, so N is read again
    """
    def __init__(self, commit_every_msgs: int = COMMIT_EVERY_MSGS, commit_every_secs: float = COMMIT_EVERY_SECS):
        self.commit_every_msgs = commit_every_msgs
        self.commit_every_secs = commit_every_secs

        self.lock = threading.Lock()
        self.assigned: Set[Tuple[str, int]] = set()
        self.last_processed_next: Dict[Tuple[str, int], int] = {}   # (topic, partition) -> next_offset
        self.held: Dict[Tuple[str, int], int] = {}                  # (topic, partition) -> first unacked offset
        self.generations: Dict[Tuple[str, int], int] = {}           # (topic, partition) -> assignment number
        self.processed_since_commit = 0
        self.last_commit_ts = time.time()

    def track(self, tps: List[TopicPartition]):
        with self.lock:
            for tp in tps:
                key = (tp.topic, tp.partition)
                self.assigned.add(key)
                self.generations[key] = self.generations.get(key, 0) + 1

    def generation(self, topic: str, partition: int) -> int:
        with self.lock:
            return self.generations.get((topic, partition), 0)

    def _is_current(self, key: Tuple[str, int], generation: Optional[int]) -> bool:
        if key not in self.assigned:
            return False
        return generation is None or generation == self.generations.get(key)

    def mark_processed(self, topic: str, partition: int, offset: int, generation: Optional[int] = None):
        with self.lock:
            key = (topic, partition)
            if not self._is_current(key, generation):
                log.debug(f"Ignoring ack for {key} offset={offset} from a stale or revoked assignment")
                return
            next_off = offset + 1

            # Never move backwards
            if next_off > self.last_processed_next.get(key, -1):
                self.last_processed_next[key] = next_off
            self.processed_since_commit += 1

    def hold(self, topic: str, partition: int, offset: int, generation: Optional[int] = None):
        with self.lock:
            key = (topic, partition)
            if not self._is_current(key, generation):
                return
            prev = self.held.get(key)
            if prev is None or offset < prev:
                self.held[key] = offset

    def committable(self, topic: str, partition: int) -> Optional[int]:
        with self.lock:
            return self._committable((topic, partition))

    def _committable(self, key: Tuple[str, int]) -> Optional[int]:
        offs = [o for o in (self.last_processed_next.get(key), self.held.get(key)) if o is not None]
        return min(offs) if offs else None

    def should_commit(self) -> bool:
        with self.lock:
            if self.processed_since_commit == 0:
                return False
            due_by_count = self.processed_since_commit >= self.commit_every_msgs
            due_by_time = (time.time() - self.last_commit_ts) >= self.commit_every_secs
            return due_by_count or due_by_time

    def snapshot(self, partitions: Optional[List[TopicPartition]] = None) -> List[TopicPartition]:
        """
        Offsets to commit, optionally restricted to `partitions`; resets cadence counters

        Returns
        ----------
        List[TopicPartition] - TopicPartition(topic, partition, committable_offset) for Consumer.commit(offsets=...)
        """
        with self.lock:
            if partitions is None:
                keys = set(self.last_processed_next) | set(self.held)
            else:
                keys = {(tp.topic, tp.partition) for tp in partitions}

            tps = []
            for topic, partition in sorted(keys):
                off = self._committable((topic, partition))
                if off is not None and off >= 0:
                    tps.append(TopicPartition(topic, partition, off))

            self.processed_since_commit = 0
            self.last_commit_ts = time.time()
            return tps

    def reset_partition(self, tps: List[TopicPartition]):
        with self.lock:
            for tp in tps:
                key = (tp.topic, tp.partition)
                self.assigned.discard(key)
                self.last_processed_next.pop(key, None)
                self.held.pop(key, None)


class Acknowledgment:
    """
    Per-record acknowledgment handle handed to the record handler

    `acknowledge()` marks the record processed in the commit tracker; the actual broker commit follows on the commit
    cadence. Idempotent
    """
    def __init__(self, tracker: CommitTracker, topic: str, partition: int, offset: int,
                 generation: Optional[int] = None):
        self.tracker = tracker
        self.topic = topic
        self.partition = partition
        self.offset = offset
        self.generation = generation
        self.acknowledged = False

    def acknowledge(self):
        if not self.acknowledged:
            self.tracker.mark_processed(self.topic, self.partition, self.offset, self.generation)
            self.acknowledged = True


# ---------- Partition Worker ----------
class PartitionWorker(threading.Thread):
    """
    Per-partition worker thread

    Purpose
    ----------
    - Preserves per-partition order by handling records sequentially, each to completion (including the bounded wait
      for the task result) before taking the next
    - Isolates slow partitions from others (each has its own queue)
    - Records that the handler did not acknowledge are held in the commit tracker; no local retry

    Lifecycle
    ----------
    - Created on partition assignment; stopped on revocation or shutdown
    - After `stop()` the worker finishes the record in hand and exits; queued records are dropped unacknowledged
    """
    daemon = True

    def __init__(self, topic: str, partition: int, commit_tracker: CommitTracker, handler: TopicConsumer,
                 queue_max: int = PARTITION_QUEUE_MAX):
        super().__init__(name=f"worker-{topic}-{partition}")
        self.topic = topic
        self.partition = partition
        self.commit_tracker = commit_tracker
        self.handler = handler
        self.generation = commit_tracker.generation(topic, partition)

        self.q: "queue.Queue" = queue.Queue(maxsize=queue_max)
        self.stop_ev = threading.Event()

    def offer(self, msg) -> bool:
        """Enqueue without blocking; False means the queue is full and the partition should be paused"""
        try:
            self.q.put(msg, block=False)
            return True
        except queue.Full:
            return False

    def run(self):
        while not self.stop_ev.is_set():
            try:
                msg = self.q.get(timeout=0.2)
            except queue.Empty:
                continue
            self.process(msg)

    def process(self, msg) -> bool:
        """Handle one message; returns whether it was acknowledged"""
        offset = msg.offset()
        ack = Acknowledgment(self.commit_tracker, msg.topic(), msg.partition(), offset, self.generation)
        try:
            self.handler.on_record(Record.from_message(msg), ack)
        except Exception:
            # on_record contains its own errors; this only guards the worker thread
            log.exception(f"Unhandled error for {msg.topic()}[{msg.partition()}]@{offset}")

        if not ack.acknowledged:
            self.commit_tracker.hold(msg.topic(), msg.partition(), offset, self.generation)
            log.warning(f"Not acknowledged {msg.topic()}[{msg.partition()}]@{offset}; will be redelivered")
        return ack.acknowledged

    def stop(self):
        self.stop_ev.set()


# ---------- Consumer manager ----------
class ConsumerApp:
    """
    Consumer manager: owns the Kafka Consumer and orchestrates partition workers

    Responsabilities
    ----------
    - Create and configure the Kafka Consumer (manual commits, cooperative rebalance)
    - Subscribe to the topics and manage lifecycle hooks (on_assign / on_revoke)
    - Spawn one `PartitionWorker` per assigned partition
    - Handle backpressure via pause/resume
    - Coordinate graceful shutdown and final commits

    Parameters
    ----------
    handler: TopicConsumer - Record handler shared by all workers
    topics: List[str] - Topics to subscribe to; each must have a message type
    group_id: str - Consumer group
    consumer: Optional[Consumer] - Pre-built consumer (tests); built from config when None
    """
    def __init__(self, handler: TopicConsumer, topics: Optional[List[str]] = None, group_id: str = GROUP_ID,
                 consumer: Optional[Consumer] = None, commit_tracker: Optional[CommitTracker] = None):
        self.topics = list(TOPICS if topics is None else topics)
        unknown = [t for t in self.topics if t not in handler.message_types]
        if unknown:
            raise ValueError(f"No message type configured for topics {unknown}; known: {sorted(handler.message_types)}")

        self.handler = handler
        self.group_id = group_id
        self.stop = False
        self.consumer = consumer if consumer is not None else self._create_consumer()
        self.commit_tracker = commit_tracker or CommitTracker()

        self.workers: Dict[Tuple[str, int], PartitionWorker] = {}
        self.paused: Dict[Tuple[str, int], bool] = {}

    def install_signal_handlers(self):
        signal.signal(signal.SIGINT, self._signal)
        signal.signal(signal.SIGTERM, self._signal)

    def _signal(self, *_):
        log.info("Signal received; shutting down...")
        self.stop = True

    def _create_consumer(self) -> Consumer:
        """
        Build and configure the Kafka Consumer

        Key settings
        ----------
        - enable.auto.commit=False - manual, synchronous commits
        - partition.assignment.strategy='cooperative-sticky'
        - max.poll.interval.ms - must exceed the worst-case record handling time (task wait included)
        - statistics.interval.ms - >0 to emit stats through `stats_cb`
        """
        def error_cb(err):
            log.error(f"Kafka client error: {err}")

        def stats_cb(stats_json_str):
            log.debug(f"[kafka_stats] {stats_json_str}")

        config = {
            "bootstrap.servers": BOOTSTRAP,
            "group.id": self.group_id,
            "enable.auto.commit": False,
            "auto.offset.reset": AUTO_OFFSET_RESET,
            "client.id": CLIENT_ID,
            "partition.assignment.strategy": "cooperative-sticky",
            "session.timeout.ms": SESSION_TIMEOUT_MS,
            "max.poll.interval.ms": MAX_POLL_INTERVAL,
            "socket.keepalive.enable": True,
            "statistics.interval.ms": STAT_INTERVAL_MS,
            "error_cb": error_cb,
            "stats_cb": stats_cb,
        }

        # SASL/TLS
        if SASL_MECHANISM and SASL_USERNAME and SASL_PASSWORD:
            config.update({
                "security.protocol": "SASL_SSL",
                "sasl.mechanisms": SASL_MECHANISM,
                "sasl.username": SASL_USERNAME,
                "sasl.password": SASL_PASSWORD
            })

        if SSL_CA_LOCATION:
            config["ssl.ca.location"] = SSL_CA_LOCATION

        return Consumer(config, logger=log)

    # ---------- Rebalance lifecycle ----------
    def on_assign(self, consumer: Consumer, partitions: List[TopicPartition]):
        log.info(f"Partitions assigned: {[(p.topic, p.partition, p.offset) for p in partitions]}")
        consumer.incremental_assign(partitions)
        self.commit_tracker.track(partitions)

        for tp in partitions:
            key = (tp.topic, tp.partition)
            if key not in self.workers:
                # A worker from a previous assignment may still be finishing; its acks carry the old generation
                w = PartitionWorker(tp.topic, tp.partition, self.commit_tracker, self.handler)
                w.start()
                self.workers[key] = w
                self.paused[key] = False
            else:
                self.workers[key].generation = self.commit_tracker.generation(tp.topic, tp.partition)

    def on_revoke(self, consumer: Consumer, partitions: List[TopicPartition]):
        """
        Partition revocation callback

        Behavior
        ----------
        1. Stop the workers of the revoked partitions and give the record in hand a grace period
        2. Synchronously commit their committable offsets (held partitions commit the held offset)
        3. Reset commit tracking for those partitions and unassign
        """
        log.info(f"Partitions revoked: {[(p.topic, p.partition) for p in partitions]}")

        stopping = []
        for tp in partitions:
            key = (tp.topic, tp.partition)
            w = self.workers.pop(key, None)
            if w:
                w.stop()
                stopping.append(w)
            self.paused.pop(key, None)
        self._join_workers(stopping)

        if partitions:
            to_commit = self.commit_tracker.snapshot(partitions)
            if to_commit:
                try:
                    consumer.commit(offsets=to_commit, asynchronous=False)
                    log.info(f"Committed on revoke: {[(tp.topic, tp.partition, tp.offset) for tp in to_commit]}")
                except Exception as e:
                    log.error(f"Commit on revoke failed: {e}")

        self.commit_tracker.reset_partition(partitions)
        consumer.incremental_unassign(partitions)

    # ---------- Pause/Resume helpers ----------
    def _pause_partition(self, tp: TopicPartition):
        key = (tp.topic, tp.partition)
        if not self.paused.get(key):
            self.consumer.pause([tp])
            self.paused[key] = True
            log.debug(f"Paused {key}")

    def _resume_partition(self, tp: TopicPartition):
        key = (tp.topic, tp.partition)
        if self.paused.get(key):
            self.consumer.resume([tp])
            self.paused[key] = False
            log.debug(f"Resumed {key}")

    # ---------- Main loop ----------
    def poll_once(self) -> bool:
        """
        Poll one message and route it to its partition worker

        Returns
        ----------
        bool - True if a message was handed to a worker
        """
        # Resume partitions whose queues drained to half or less
        for (topic, partition), w in list(self.workers.items()):
            if self.paused.get((topic, partition)) and w.q.qsize() <= w.q.maxsize // 2:
                self._resume_partition(TopicPartition(topic, partition))

        msg = self.consumer.poll(POLL_TIMEOUT_S)

        if msg is None:
            if self.commit_tracker.should_commit():
                self._commit_safe()
            return False

        if msg.error():
            if msg.error().code() == KafkaError._PARTITION_EOF:
                return False
            log.error(f"Consume error: {msg.error()}")
            return False

        key = (msg.topic(), msg.partition())
        worker = self.workers.get(key)
        if not worker:
            # Can happen briefly during rebalance; the record stays uncommitted
            log.debug(f"No worker for {key}; skipping message offset={msg.offset()}")
            return False

        if not worker.offer(msg):
            # Rewind so the rejected record is fetched again once the partition resumes
            tp = TopicPartition(msg.topic(), msg.partition(), msg.offset())
            self._pause_partition(tp)
            self.consumer.seek(tp)
            return False

        if self.commit_tracker.should_commit():
            self._commit_safe()
        return True

    def run(self):
        """
        Main consumer event loop

        Commit semantics
        ----------
        - At-least-once: offsets advance only for acknowledged records and commits are synchronous
        """
        log.info(f"Starting consumer group={self.group_id} topics={self.topics}")
        self.consumer.subscribe(self.topics, on_assign=self.on_assign, on_revoke=self.on_revoke)

        processed = 0
        last_log = time.time()

        try:
            while not self.stop:
                if self.poll_once():
                    processed += 1

                now = time.time()
                if now - last_log >= 10:
                    sizes = {f"{t} - {p}": w.q.qsize() for (t, p), w in self.workers.items()}
                    log.info(f"Loop dispatched = {processed} queued={sizes}")
                    last_log = now
        finally:
            self.shutdown()

    def shutdown(self):
        log.info("Shutting down; stop workers + final commit...")
        workers = list(self.workers.values())
        for w in workers:
            w.stop()
        self._join_workers(workers)

        try:
            self._commit_safe()
        except Exception as e:
            log.error(f"Final commit failed: {e}")

        self.consumer.close()
        log.info("Consumer closed.")

    def _join_workers(self, workers: List[PartitionWorker]):
        deadline = time.monotonic() + SHUTDOWN_GRACE_S
        for w in workers:
            if w.is_alive():
                w.join(max(0.0, deadline - time.monotonic()))
            if w.is_alive():
                log.warning(f"{w.name} still busy; its record stays unacknowledged")

    def _commit_safe(self):
        """Commit the committable offsets (synchronously); failures are logged"""
        tps = self.commit_tracker.snapshot()
        if not tps:
            return

        try:
            self.consumer.commit(offsets=tps, asynchronous=False)
            log.debug(f"Committed: {[(tp.topic, tp.partition, tp.offset) for tp in tps]}")
        except Exception as e:
            log.error(f"Commit failed: {e}")


# ---------- Entrypoint ----------
def main():
    log.info(f"Using bootstrap.servers={BOOTSTRAP} task_backend={TASK_BACKEND}")

    client = create_task_client()
    with client:
        dispatcher = TaskDispatcher(client, result_timeout_s=TASK_RESULT_TIMEOUT_S)
        app = ConsumerApp(TopicConsumer(dispatcher, MESSAGE_TYPES))
        app.install_signal_handlers()
        app.run()


if __name__ == "__main__":
    main()
