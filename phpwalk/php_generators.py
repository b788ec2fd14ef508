"""
Lazy generators.

A generator body runs as its own asyncio task. It hands every yielded
key/value pair to the consumer through a queue and then waits for the
consumer's next instruction (send a value, throw an exception into the
body). The body only runs while its consumer waits for it, so output
produced by the body interleaves with the consumer's output exactly as in a
resumable coroutine, and infinite generators are fine.
"""
import asyncio
from typing import Any, Awaitable, Callable, Optional, TYPE_CHECKING

from phpwalk.php_datatypes import PhpArray, PhpError, ThrowSignal, ExitSignal

if TYPE_CHECKING:
    from phpwalk.php_interpreter import Evaluator


class GeneratorRunner:
    """Drives one generator body and exposes the Generator method protocol."""

    def __init__(self, evaluator: 'Evaluator', body: Callable[[], Awaitable[Any]], name: str = '{closure}'):
        self.evaluator = evaluator
        self.name = name
        self._body = body
        self._to_consumer: asyncio.Queue = asyncio.Queue()
        self._to_body: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self.started = False
        self.finished = False
        self.running = False
        self.advanced = False
        self.current_key: Any = None
        self.current_value: Any = None
        self.return_value: Any = None
        self.next_auto_key = 0

    # --- Body side ---

    async def _run(self):
        try:
            value = await self._body()
        except ThrowSignal as e:
            msg = ('throw', e.exception)
        except ExitSignal as e:
            msg = ('exit', e.status)
        except Exception as e:
            msg = ('error', e)
        else:
            msg = ('return', value)
        self._to_consumer.put_nowait(msg)

    async def yield_(self, key: Any, value: Any, delegated: bool = False) -> Any:
        """Suspends the body at a ``yield``; returns the value sent by the consumer."""
        if not delegated:
            if key is None:
                key = self.next_auto_key
                self.next_auto_key += 1
            elif isinstance(key, int) and not isinstance(key, bool) and key >= self.next_auto_key:
                self.next_auto_key = key + 1
        self._to_consumer.put_nowait(('yield', key, value))
        msg = await self._to_body.get()
        match msg:
            case ('send', sent):
                return sent
            case ('throw', exc):
                raise ThrowSignal(exc)
        raise PhpError(f"Unexpected generator message {msg[0]!r}")

    async def delegate(self, inner: 'GeneratorRunner') -> Any:
        """``yield from`` another generator; returns its return value."""
        await inner.ensure_started()
        while not inner.finished:
            try:
                sent = await self.yield_(inner.current_key, inner.current_value, delegated=True)
            except ThrowSignal as t:
                await inner.throw(t.exception)
                continue
            if sent is None:
                await inner.next()
            else:
                await inner.send(sent)
        return inner.return_value

    async def delegate_array(self, arr: PhpArray) -> None:
        for key, value in arr.items():
            await self.yield_(key, value, delegated=True)

    # --- Consumer side ---

    async def ensure_started(self) -> None:
        if self.started:
            return
        self.started = True
        self._task = asyncio.get_running_loop().create_task(self._run())
        self.evaluator.register_task(self._task)
        await self._receive()

    async def _receive(self) -> None:
        self.running = True
        try:
            msg = await self._to_consumer.get()
        finally:
            self.running = False
        match msg:
            case ('yield', key, value):
                self.current_key = key
                self.current_value = value
            case ('return', value):
                self._finish()
                self.return_value = value
            case ('throw', exc):
                self._finish()
                raise ThrowSignal(exc)
            case ('exit', status):
                self._finish()
                raise ExitSignal(status)
            case ('error', err):
                self._finish()
                raise err

    def _finish(self) -> None:
        self.finished = True
        self.current_key = None
        self.current_value = None

    async def _resume(self, msg: tuple) -> None:
        if self.finished:
            return
        if self.running:
            raise PhpError("Cannot resume an already running generator")
        self.advanced = True
        self._to_body.put_nowait(msg)
        await self._receive()

    async def current(self) -> Any:
        await self.ensure_started()
        return self.current_value

    async def key(self) -> Any:
        await self.ensure_started()
        return self.current_key

    async def next(self) -> None:
        await self.ensure_started()
        await self._resume(('send', None))

    async def send(self, value: Any) -> Any:
        await self.ensure_started()
        await self._resume(('send', value))
        return self.current_value

    async def throw(self, exception) -> Any:
        await self.ensure_started()
        if self.finished:
            raise ThrowSignal(exception)
        await self._resume(('throw', exception))
        return self.current_value

    async def valid(self) -> bool:
        await self.ensure_started()
        return not self.finished

    async def rewind(self) -> None:
        await self.ensure_started()
        if self.advanced:
            self.evaluator.throw_error('Exception', "Cannot rewind a generator that was already run")

    def get_return(self) -> Any:
        if not self.finished or not self.started:
            self.evaluator.throw_error(
                'Exception', "Cannot get return value of a generator that hasn't returned")
        return self.return_value

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
