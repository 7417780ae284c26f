"""Logical sessions and transactions for encrypted operations.

A session carries its own context (id, transaction state, transaction
number, operation counter) and is passed explicitly to every operation;
nothing about it lives in globals.

Transaction states::

    NONE -> STARTING -> IN_PROGRESS -> COMMITTING -> COMMITTED
                                    -> ABORTING   -> ABORTED

COMMITTED and ABORTED are terminal for that transaction; the next operation
or ``start_transaction`` puts the session back in use.

Operations on one session run one at a time, in the order they were issued.
Different sessions run concurrently.
"""
import enum
import uuid
import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from bson.binary import Binary, UUID_SUBTYPE
from bson.int64 import Int64
from pymongo.errors import OperationFailure

from .dispatch import Dispatcher, check_reply
from .encryption.exceptions import InvalidTransactionStateError

logger = logging.getLogger("navigator.fle.session")

_READ_COMMANDS = frozenset({"find", "aggregate", "count", "distinct"})

NO_SUCH_TRANSACTION = 251
UNKNOWN_COMMIT_RESULT = "UnknownTransactionCommitResult"

Prepare = Callable[[dict], Awaitable[dict]]


class TransactionState(enum.Enum):
    NONE = "none"
    STARTING = "starting"
    IN_PROGRESS = "in_progress"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ABORTING = "aborting"
    ABORTED = "aborted"


_ACTIVE = frozenset({TransactionState.STARTING, TransactionState.IN_PROGRESS})


class SessionContext:
    """Client-side state of one logical session.

    Use it as an async context manager so the session is always ended::

        async with client.start_session() as session:
            session.start_transaction()
            await coll.insert_one({"ssn": "..."}, session=session)
            await session.commit_transaction()
    """

    def __init__(
        self,
        coordinator: "SessionTransactionCoordinator",
        causal_consistency: bool = True,
    ):
        self._coordinator = coordinator
        self.session_id = Binary(uuid.uuid4().bytes, UUID_SUBTYPE)
        self.state = TransactionState.NONE
        self.txn_number = 0
        self.operation_count = 0
        self.operation_time: Any = None
        self.causal_consistency = causal_consistency
        self.transaction_options: dict[str, Any] = {}
        self.needs_state_check = False
        self.ended = False
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return (
            f'<SessionContext [{self.session_id_str}] state={self.state.value} '
            f'txn={self.txn_number} ops={self.operation_count}>'
        )

    @property
    def session_id_str(self) -> str:
        return str(self.session_id.as_uuid())

    @property
    def lsid(self) -> dict:
        return {"id": self.session_id}

    @property
    def in_transaction(self) -> bool:
        return self.state in _ACTIVE

    @property
    def busy(self) -> bool:
        """True while an operation holds the session."""
        return self._lock.locked()

    # shortcuts to the coordinator

    def start_transaction(self, **options: Any) -> None:
        self._coordinator.start_transaction(self, **options)

    async def commit_transaction(self) -> None:
        await self._coordinator.commit_transaction(self)

    async def abort_transaction(self) -> None:
        await self._coordinator.abort_transaction(self)

    async def with_transaction(self, callback, **options: Any) -> Any:
        return await self._coordinator.with_transaction(self, callback, **options)

    async def end_session(self) -> None:
        await self._coordinator.end_session(self)

    async def __aenter__(self) -> "SessionContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.end_session()


class SessionTransactionCoordinator:
    """Sequences operations per session and drives the transaction state machine."""

    def __init__(self, dispatcher: Dispatcher):
        self._dispatcher = dispatcher
        self._sessions: set[SessionContext] = set()

    def start_session(self, causal_consistency: bool = True) -> SessionContext:
        session = SessionContext(self, causal_consistency=causal_consistency)
        self._sessions.add(session)
        logger.debug("Started session %s", session.session_id_str)
        return session

    def _check_open(self, session: SessionContext) -> None:
        if session.ended:
            raise InvalidTransactionStateError(
                f"Session {session.session_id_str} has ended"
            )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _apply_session(self, session: SessionContext, command: dict) -> dict:
        cmd = dict(command)
        cmd["lsid"] = session.lsid
        state = session.state
        if state in _ACTIVE:
            cmd["txnNumber"] = Int64(session.txn_number)
            cmd["autocommit"] = False
            if state is TransactionState.STARTING:
                cmd["startTransaction"] = True
                read_concern = session.transaction_options.get("read_concern")
                if read_concern:
                    cmd["readConcern"] = read_concern
            else:
                # only the first statement of a transaction carries readConcern
                cmd.pop("readConcern", None)
            cmd.pop("writeConcern", None)
        elif (
            session.causal_consistency
            and session.operation_time is not None
            and next(iter(command)) in _READ_COMMANDS
        ):
            cmd["readConcern"] = {
                **cmd.get("readConcern", {}),
                "afterClusterTime": session.operation_time,
            }
        return cmd

    async def execute(
        self,
        session: SessionContext,
        database: str,
        command: dict,
        prepare: Optional[Prepare] = None,
    ) -> dict:
        """Run one command on ``session``.

        The command is tagged with the session (and transaction) fields, then
        passed through ``prepare`` (encryption) and dispatched. Operations
        issued on the same session wait for the previous one to finish.

        Raises:
            InvalidTransactionStateError: Session ended, or a commit outcome
                is still unknown.
        """
        self._check_open(session)
        async with session._lock:
            self._check_open(session)
            if session.needs_state_check:
                raise InvalidTransactionStateError(
                    f"Commit outcome unknown for session "
                    f"{session.session_id_str}; call commit_transaction() "
                    f"or check_transaction_state() first"
                )
            if session.state in (TransactionState.COMMITTED, TransactionState.ABORTED):
                session.state = TransactionState.NONE
            elif session.state in (TransactionState.COMMITTING, TransactionState.ABORTING):
                raise InvalidTransactionStateError(
                    f"Transaction is {session.state.value}"
                )
            cmd = self._apply_session(session, command)
            if prepare is not None:
                cmd = await prepare(cmd)
            if session.state is TransactionState.STARTING:
                session.state = TransactionState.IN_PROGRESS
            reply = await self._dispatcher.dispatch(database, cmd, session)
            session.operation_count += 1
            if "operationTime" in reply:
                session.operation_time = reply["operationTime"]
            return reply

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def start_transaction(
        self,
        session: SessionContext,
        read_concern: Optional[dict] = None,
        write_concern: Optional[dict] = None,
    ) -> None:
        """Begin a transaction; the next operation starts it on the server.

        Raises:
            InvalidTransactionStateError: A transaction is already active,
                an operation is running, or a commit outcome is unknown.
        """
        self._check_open(session)
        if session.state in (
            TransactionState.STARTING,
            TransactionState.IN_PROGRESS,
            TransactionState.COMMITTING,
            TransactionState.ABORTING,
        ):
            raise InvalidTransactionStateError("Transaction already in progress")
        if session.needs_state_check:
            raise InvalidTransactionStateError(
                "Previous commit outcome unknown; check the transaction state first"
            )
        if session.busy:
            raise InvalidTransactionStateError(
                "Cannot start a transaction while an operation is running"
            )
        session.txn_number += 1
        session.transaction_options = {
            "read_concern": read_concern,
            "write_concern": write_concern,
        }
        session.state = TransactionState.STARTING
        logger.debug(
            "Session %s starting transaction %d",
            session.session_id_str, session.txn_number,
        )

    def _end_command(self, session: SessionContext, name: str, retry: bool = False) -> dict:
        cmd = {
            name: 1,
            "lsid": session.lsid,
            "txnNumber": Int64(session.txn_number),
            "autocommit": False,
        }
        write_concern = session.transaction_options.get("write_concern")
        if retry:
            write_concern = {**(write_concern or {}), "w": "majority"}
        if write_concern:
            cmd["writeConcern"] = write_concern
        return cmd

    async def commit_transaction(self, session: SessionContext) -> None:
        """Commit the active transaction.

        Calling it again after a failed or cancelled commit retries the
        commit. A failure or cancellation whose outcome is unknown leaves the
        session flagged with ``needs_state_check``; no further writes are
        accepted until a commit retry succeeds. A commit the server rejects
        outright (the transaction no longer exists, a write conflict) leaves
        the transaction ABORTED and raises ``OperationFailure``.

        Raises:
            InvalidTransactionStateError: No transaction, or it was aborted.
            OperationFailure: The server refused the commit.
        """
        self._check_open(session)
        async with session._lock:
            state = session.state
            if state is TransactionState.NONE:
                raise InvalidTransactionStateError("No transaction started")
            if state in (TransactionState.ABORTING, TransactionState.ABORTED):
                raise InvalidTransactionStateError(
                    "Cannot call commitTransaction after calling abortTransaction"
                )
            if state is TransactionState.STARTING:
                # nothing was sent, nothing to commit on the server
                session.state = TransactionState.COMMITTED
                return
            retry = state in (TransactionState.COMMITTING, TransactionState.COMMITTED)
            session.state = TransactionState.COMMITTING
            try:
                reply = await self._dispatcher.dispatch(
                    "admin", self._end_command(session, "commitTransaction", retry), session,
                )
            except BaseException:
                session.needs_state_check = True
                logger.warning(
                    "Commit of transaction %d on session %s did not complete",
                    session.txn_number, session.session_id_str,
                )
                raise
            try:
                check_reply(reply)
                if "writeConcernError" in reply:
                    err = reply["writeConcernError"]
                    raise OperationFailure(
                        err.get("errmsg", "write concern failed"), err.get("code"), reply,
                    )
            except OperationFailure as err:
                self._commit_failed(session, err)
                raise
            session.state = TransactionState.COMMITTED
            session.needs_state_check = False
            logger.debug(
                "Session %s committed transaction %d",
                session.session_id_str, session.txn_number,
            )

    def _commit_failed(self, session: SessionContext, err: OperationFailure) -> None:
        details = err.details or {}
        if (
            UNKNOWN_COMMIT_RESULT in details.get("errorLabels", ())
            or "writeConcernError" in details
        ):
            # the writes may or may not have been applied
            session.needs_state_check = True
            logger.warning(
                "Commit of transaction %d on session %s has unknown outcome: %s",
                session.txn_number, session.session_id_str, err,
            )
            return
        session.state = TransactionState.ABORTED
        session.needs_state_check = False
        logger.warning(
            "Server rejected commit of transaction %d on session %s: %s",
            session.txn_number, session.session_id_str, err,
        )

    async def check_transaction_state(self, session: SessionContext) -> TransactionState:
        """Resolve an unknown commit outcome by retrying the commit.

        commitTransaction is idempotent on the server: a retry either
        confirms the earlier commit or performs it. If the server no longer
        knows the transaction, it was rolled back: the session moves to
        ABORTED and the rejection is raised.
        """
        if session.needs_state_check:
            await self.commit_transaction(session)
        return session.state

    async def abort_transaction(self, session: SessionContext) -> None:
        """Abort the active transaction, discarding all its writes.

        The session ends up ABORTED even if the abort command fails; the
        server drops abandoned transactions on its own. A server reply saying
        the transaction no longer exists is treated as success.

        Raises:
            InvalidTransactionStateError: No transaction, it already
                committed or aborted, or a commit outcome is still unknown.
            OperationFailure: The server refused the abort.
        """
        self._check_open(session)
        async with session._lock:
            if session.needs_state_check:
                raise InvalidTransactionStateError(
                    f"Commit outcome unknown for session "
                    f"{session.session_id_str}; call check_transaction_state() "
                    f"before aborting"
                )
            state = session.state
            if state is TransactionState.NONE:
                raise InvalidTransactionStateError("No transaction started")
            if state in (TransactionState.COMMITTING, TransactionState.COMMITTED):
                raise InvalidTransactionStateError(
                    "Cannot call abortTransaction after calling commitTransaction"
                )
            if state is TransactionState.ABORTED:
                raise InvalidTransactionStateError(
                    "Cannot call abortTransaction twice"
                )
            if state is TransactionState.STARTING:
                session.state = TransactionState.ABORTED
                return
            session.state = TransactionState.ABORTING
            try:
                reply = await self._dispatcher.dispatch(
                    "admin", self._end_command(session, "abortTransaction"), session,
                )
                if reply.get("code") != NO_SUCH_TRANSACTION:
                    check_reply(reply)
            finally:
                session.state = TransactionState.ABORTED
                logger.debug(
                    "Session %s aborted transaction %d",
                    session.session_id_str, session.txn_number,
                )

    async def with_transaction(
        self,
        session: SessionContext,
        callback: Callable[[SessionContext], Awaitable[Any]],
        **options: Any,
    ) -> Any:
        """Run ``callback(session)`` inside a transaction and commit it.

        Any exception from the callback aborts the transaction and is
        re-raised. Nothing is retried.
        """
        self.start_transaction(session, **options)
        try:
            result = await callback(session)
        except BaseException:
            if session.in_transaction:
                await self.abort_transaction(session)
            raise
        if session.in_transaction:
            await self.commit_transaction(session)
        return result

    # ------------------------------------------------------------------
    # Lifetime
    # ------------------------------------------------------------------

    async def end_session(self, session: SessionContext) -> None:
        """End the session, aborting any open transaction. Idempotent.

        A transaction whose commit outcome is unknown is left alone: it is
        never aborted on the way out.
        """
        if session.ended:
            return
        if session.needs_state_check:
            logger.warning(
                "Ending session %s with unknown outcome for transaction %d",
                session.session_id_str, session.txn_number,
            )
        elif session.state is TransactionState.IN_PROGRESS:
            try:
                await self.abort_transaction(session)
            except Exception as err:
                logger.warning(
                    "Abort on end of session %s failed: %s",
                    session.session_id_str, err,
                )
        async with session._lock:
            if session.ended:
                return
            session.ended = True
            self._sessions.discard(session)
        try:
            await self._dispatcher.dispatch("admin", {"endSessions": [session.lsid]})
        except Exception as err:
            logger.warning(
                "endSessions for %s failed: %s", session.session_id_str, err,
            )
        logger.debug("Ended session %s", session.session_id_str)

    async def close(self) -> None:
        for session in list(self._sessions):
            await self.end_session(session)
