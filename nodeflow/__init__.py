import asyncio, warnings, copy, time, contextvars
from dataclasses import dataclass, field
from typing import Any, Optional, List, Dict
from collections.abc import Iterable, Mapping
from enum import Enum

class FlowError(Exception):
    """Base class for errors raised by the engine itself."""

class CapabilityMismatchError(FlowError, RuntimeError):
    """A node was driven through the entry point of the other execution mode."""

class FlowStepLimitError(FlowError, RuntimeError):
    """A flow activated more nodes than its ``max_steps`` allows in one pass."""
    def __init__(self, flow_name, max_steps):
        super().__init__(f"Flow '{flow_name}' exceeded max_steps={max_steps}")
        self.flow_name, self.max_steps = flow_name, max_steps

class TraceEventType(Enum):
    NODE_START = "node_start"
    NODE_PREP = "node_prep"
    NODE_EXEC = "node_exec"
    NODE_POST = "node_post"
    NODE_END = "node_end"
    NODE_ERROR = "node_error"
    RETRY_ATTEMPT = "retry_attempt"
    RETRY_WAIT = "retry_wait"
    FALLBACK = "fallback"
    TRANSITION = "transition"
    STEP_LIMIT = "step_limit"
    FLOW_START = "flow_start"
    FLOW_END = "flow_end"

@dataclass
class TraceEvent:
    event_type: TraceEventType
    node_name: str
    timestamp: float = field(default_factory=time.time)
    data: Optional[Dict[str, Any]] = None

    def __repr__(self):
        data_str = f", data={self.data}" if self.data else ""
        return f"TraceEvent({self.event_type.value}, node={self.node_name}, t={self.timestamp:.4f}{data_str})"

# Keys kept on events even when capture_data is off
_LIGHT_KEYS = ('action', 'retry', 'max_retries', 'wait_time', 'error', 'type', 'from_node', 'to_node', 'max_steps', 'prep_time', 'exec_time', 'post_time')

class FlowTracer:
    """Records what happened during a run, for debugging.

    Usage:
        tracer = FlowTracer()
        flow.run(shared, tracer=tracer)
        tracer.print_summary()

    The tracer follows the run into nested flows and into the tasks of the
    parallel batch adapters. Events from concurrent tasks interleave in the
    order they were recorded.
    """
    def __init__(self, capture_data: bool = False, max_data_size: int = 1000):
        """
        Args:
            capture_data: If True, also records reprs of prep/exec results
            max_data_size: Maximum repr length for captured data
        """
        self.events: List[TraceEvent] = []
        self.capture_data = capture_data
        self.max_data_size = max_data_size

    def _truncate(self, data: Any) -> Any:
        if data is None:
            return None
        s = repr(data)
        if len(s) > self.max_data_size:
            return s[:self.max_data_size] + "...[truncated]"
        return s

    def record(self, event_type: TraceEventType, node_name: str, data: Optional[Dict[str, Any]] = None):
        """Record a trace event."""
        captured = None
        if data and self.capture_data:
            captured = {k: (v if k in _LIGHT_KEYS else self._truncate(v)) for k, v in data.items()}
        elif data:
            captured = {k: v for k, v in data.items() if k in _LIGHT_KEYS} or None
        self.events.append(TraceEvent(event_type, node_name, time.time(), captured))

    def get_execution_order(self) -> List[str]:
        """Get node names in the order they were activated."""
        return [e.node_name for e in self.events if e.event_type == TraceEventType.NODE_START]

    def get_transitions(self) -> List[Dict[str, str]]:
        return [
            {"from": e.data.get("from_node"), "to": e.data.get("to_node"), "action": e.data.get("action")}
            for e in self.events if e.event_type == TraceEventType.TRANSITION and e.data
        ]

    def get_retries(self) -> List[Dict[str, Any]]:
        """Get one entry per failed attempt that was followed by a retry."""
        return [
            {"node": e.node_name, **e.data}
            for e in self.events if e.event_type == TraceEventType.RETRY_WAIT and e.data
        ]

    def get_errors(self) -> List[Dict[str, Any]]:
        """Get the errors that escaped a node and aborted its activation."""
        return [
            {"node": e.node_name, **(e.data or {})}
            for e in self.events if e.event_type == TraceEventType.NODE_ERROR
        ]

    def get_duration(self) -> float:
        if not self.events:
            return 0.0
        return self.events[-1].timestamp - self.events[0].timestamp

    def print_summary(self):
        """Print a human-readable summary of the execution trace."""
        if not self.events:
            print("No trace events recorded.")
            return
        print(f"\n{'='*60}")
        print("FLOW EXECUTION TRACE")
        print(f"{'='*60}")
        print(f"Total duration: {self.get_duration():.4f}s")
        print(f"Total events: {len(self.events)}")
        print(f"\nExecution order: {' -> '.join(self.get_execution_order())}")
        transitions = self.get_transitions()
        if transitions:
            print("\nTransitions:")
            for t in transitions:
                print(f"  {t['from']} --[{t['action']}]--> {t['to']}")
        retries = self.get_retries()
        if retries:
            print("\nRetries:")
            for r in retries:
                print(f"  {r['node']}: attempt {r.get('retry', '?')}/{r.get('max_retries', '?')} failed, waiting {r.get('wait_time', 0)}s")
        errors = self.get_errors()
        if errors:
            print("\nErrors:")
            for e in errors:
                print(f"  {e['node']}: {e.get('type', '?')}: {e.get('error', '')}")
        print("\nDetailed timeline:")
        for event in self.events:
            rel_time = event.timestamp - self.events[0].timestamp
            data_str = f" | {event.data}" if event.data else ""
            print(f"  [{rel_time:>8.4f}s] {event.event_type.value:<15} {event.node_name}{data_str}")
        print(f"{'='*60}\n")

    def to_dict(self) -> Dict[str, Any]:
        """Export trace as a dictionary for serialization."""
        return {
            "duration": self.get_duration(),
            "execution_order": self.get_execution_order(),
            "transitions": self.get_transitions(),
            "retries": self.get_retries(),
            "errors": self.get_errors(),
            "events": [
                {"type": e.event_type.value, "node": e.node_name, "timestamp": e.timestamp, "data": e.data}
                for e in self.events
            ]
        }

    def clear(self):
        self.events.clear()


# Isolated per asyncio task, so concurrent runs with different tracers don't mix
_current_tracer: contextvars.ContextVar[Optional[FlowTracer]] = contextvars.ContextVar('_current_tracer', default=None)

def _get_node_name(node) -> str:
    return getattr(node, 'name', None) or node.__class__.__name__

def _as_batch(items):
    """Normalise a prep result into the list of batch elements; a non-iterable (None included) is one element."""
    if isinstance(items, Iterable) and not isinstance(items, (str, bytes, Mapping)): return list(items)
    return [items]

def _param_sets(prep_res):
    """Normalise a batch flow's prep result into parameter sets; None means no passes."""
    return [] if prep_res is None else _as_batch(prep_res)

def _merge_params(params,bp):
    # non-mapping sets run with the flow's params only
    return {**params,**bp} if isinstance(bp,Mapping) else dict(params)

def _record_error(tracer, node, exc):
    if tracer: tracer.record(TraceEventType.NODE_ERROR, _get_node_name(node), {"error": str(exc), "type": type(exc).__name__})

class BaseNode:
    def __init__(self): self.params,self.successors,self.name={},{},None
    def set_params(self,params): self.params=params
    def get_params(self): return self.params
    def next(self,node,action="default"):
        if action in self.successors: warnings.warn(f"Overwriting successor for action '{action}'")
        self.successors[action]=node; return node
    def prep(self,shared): pass
    def exec(self,prep_res): pass
    def post(self,shared,prep_res,exec_res): pass
    def _exec(self,prep_res): return self.exec(prep_res)
    def _run(self,shared):
        # NODE_START/NODE_END are recorded by the orchestrator (or by run() when standalone)
        tracer = _current_tracer.get()
        name = _get_node_name(self) if tracer else None
        t0 = time.time(); p = self.prep(shared)
        if tracer: tracer.record(TraceEventType.NODE_PREP, name, {"prep_time": time.time()-t0, "prep_result": p})
        t0 = time.time(); e = self._exec(p)
        if tracer: tracer.record(TraceEventType.NODE_EXEC, name, {"exec_time": time.time()-t0, "exec_result": e})
        t0 = time.time(); action = self.post(shared, p, e)
        if tracer: tracer.record(TraceEventType.NODE_POST, name, {"post_time": time.time()-t0, "action": action})
        return action
    def run(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        token = _current_tracer.set(tracer) if tracer else None
        tracer = _current_tracer.get(); name = _get_node_name(self)
        if tracer: tracer.record(TraceEventType.NODE_START, name)
        try: action = self._run(shared)
        except Exception as exc: _record_error(tracer, self, exc); raise
        finally:
            if token: _current_tracer.reset(token)
        if tracer: tracer.record(TraceEventType.NODE_END, name)
        return action
    async def run_async(self,shared,tracer=None): raise CapabilityMismatchError(f"{_get_node_name(self)} is synchronous. Use run.")
    def __rshift__(self,other): return self.next(other)
    def __sub__(self,action):
        if isinstance(action,str): return _ConditionalTransition(self,action)
        raise TypeError("Action must be a string")

class _ConditionalTransition:
    def __init__(self,src,action): self.src,self.action=src,action
    def __rshift__(self,tgt): return self.src.next(tgt,self.action)

class Node(BaseNode):
    def __init__(self,max_retries=1,wait=0,exponential_backoff=True,max_wait=None):
        super().__init__()
        if max_retries<1: raise ValueError("max_retries must be at least 1")
        if wait<0: raise ValueError("wait must not be negative")
        self.max_retries,self.wait,self.exponential_backoff,self.max_wait,self.cur_retry=max_retries,wait,exponential_backoff,max_wait,0
    def exec_fallback(self,prep_res,exc): raise exc
    def _get_wait_time(self,retry_count):
        if self.wait<=0: return 0
        w=self.wait*(2**retry_count) if self.exponential_backoff else self.wait
        return min(w,self.max_wait) if self.max_wait is not None else w
    def _on_failure(self,i,exc,tracer):
        """Trace a failed attempt; return the backoff before the next one, or None when retries are exhausted."""
        name = _get_node_name(self) if tracer else None
        if i==self.max_retries-1:
            if tracer: tracer.record(TraceEventType.FALLBACK, name, {"error": str(exc), "type": type(exc).__name__})
            return None
        w=self._get_wait_time(i)
        if tracer: tracer.record(TraceEventType.RETRY_WAIT, name, {"retry": i+1, "max_retries": self.max_retries, "wait_time": w, "error": str(exc)})
        return w
    def _exec(self,prep_res):
        tracer = _current_tracer.get()
        self.cur_retry=0
        for i in range(self.max_retries):
            self.cur_retry=i
            if tracer and i>0: tracer.record(TraceEventType.RETRY_ATTEMPT, _get_node_name(self), {"retry": i+1, "max_retries": self.max_retries})
            try: res=self.exec(prep_res)
            except Exception as e:
                w=self._on_failure(i,e,tracer)
                if w is None: return self.exec_fallback(prep_res,e)
                if w>0: time.sleep(w)
                continue
            self.cur_retry=0; return res

class BatchNode(Node):
    def _exec(self,items): return [super(BatchNode,self)._exec(i) for i in _as_batch(items)]

class Flow(BaseNode):
    def __init__(self,start=None,max_steps=None):
        super().__init__()
        if max_steps is not None and max_steps<1: raise ValueError("max_steps must be at least 1")
        self.start_node,self.max_steps=start,max_steps
    def start(self,start): self.start_node=start; return start
    def get_next_node(self,curr,action):
        action=action or "default"
        nxt=curr.successors.get(action)
        if nxt is None and action!="default": nxt=curr.successors.get("default")
        if nxt is None and curr.successors: warnings.warn(f"Flow ends: '{action}' not found in {list(curr.successors)}")
        return nxt
    def _step(self,curr,p,steps,tracer):
        """Prepare the next activation: enforce max_steps, assign merged params, trace the start."""
        if self.max_steps is not None and steps>=self.max_steps:
            if tracer: tracer.record(TraceEventType.STEP_LIMIT, _get_node_name(self), {"max_steps": self.max_steps})
            raise FlowStepLimitError(_get_node_name(self),self.max_steps)
        curr.set_params({**curr.params,**p})
        if tracer: tracer.record(TraceEventType.NODE_START, _get_node_name(curr))
    def _advance(self,curr,action,tracer):
        """Trace the end of an activation and return a fresh copy of the successor, or None."""
        curr_name = _get_node_name(curr) if tracer else None
        if tracer: tracer.record(TraceEventType.NODE_END, curr_name)
        nxt=self.get_next_node(curr,action)
        if tracer and nxt is not None:
            tracer.record(TraceEventType.TRANSITION, _get_node_name(self), {"from_node": curr_name, "to_node": _get_node_name(nxt), "action": action or "default"})
        return copy.copy(nxt)
    def _orch(self,shared,params=None):
        tracer = _current_tracer.get()
        curr,p,last_action,steps = copy.copy(self.start_node),{**self.params,**(params or {})},None,0
        while curr is not None:
            self._step(curr,p,steps,tracer); steps+=1
            try: last_action=curr._run(shared)
            except Exception as exc: _record_error(tracer, curr, exc); raise
            curr=self._advance(curr,last_action,tracer)
        return last_action
    def _run(self,shared): p=self.prep(shared); o=self._orch(shared); return self.post(shared,p,o)
    def run(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use Flow.")
        token = _current_tracer.set(tracer) if tracer else None
        tracer = _current_tracer.get(); name = _get_node_name(self)
        if tracer: tracer.record(TraceEventType.FLOW_START, name)
        try: action = self._run(shared)
        finally:
            if token: _current_tracer.reset(token)
        if tracer: tracer.record(TraceEventType.FLOW_END, name, {"action": action})
        return action
    def post(self,shared,prep_res,exec_res): return exec_res

class BatchFlow(Flow):
    def _run(self,shared):
        pr=self.prep(shared)
        for bp in _param_sets(pr): self._orch(shared,_merge_params(self.params,bp))
        return self.post(shared,pr,None)

class AsyncNode(Node):
    async def prep_async(self,shared): return self.prep(shared)
    async def exec_async(self,prep_res): return self.exec(prep_res)
    async def exec_fallback_async(self,prep_res,exc): return self.exec_fallback(prep_res,exc)
    async def post_async(self,shared,prep_res,exec_res): return self.post(shared,prep_res,exec_res)
    async def _exec(self,prep_res):
        tracer = _current_tracer.get()
        self.cur_retry=0
        for i in range(self.max_retries):
            self.cur_retry=i
            if tracer and i>0: tracer.record(TraceEventType.RETRY_ATTEMPT, _get_node_name(self), {"retry": i+1, "max_retries": self.max_retries})
            try: res=await self.exec_async(prep_res)
            except Exception as e:
                w=self._on_failure(i,e,tracer)
                if w is None: return await self.exec_fallback_async(prep_res,e)
                if w>0: await asyncio.sleep(w)
                continue
            self.cur_retry=0; return res
    async def run_async(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        token = _current_tracer.set(tracer) if tracer else None
        tracer = _current_tracer.get(); name = _get_node_name(self)
        if tracer: tracer.record(TraceEventType.NODE_START, name)
        try: action = await self._run_async(shared)
        except Exception as exc: _record_error(tracer, self, exc); raise
        finally:
            if token: _current_tracer.reset(token)
        if tracer: tracer.record(TraceEventType.NODE_END, name)
        return action
    async def _run_async(self,shared):
        tracer = _current_tracer.get()
        name = _get_node_name(self) if tracer else None
        t0 = time.time(); p = await self.prep_async(shared)
        if tracer: tracer.record(TraceEventType.NODE_PREP, name, {"prep_time": time.time()-t0, "prep_result": p})
        t0 = time.time(); e = await self._exec(p)
        if tracer: tracer.record(TraceEventType.NODE_EXEC, name, {"exec_time": time.time()-t0, "exec_result": e})
        t0 = time.time(); action = await self.post_async(shared, p, e)
        if tracer: tracer.record(TraceEventType.NODE_POST, name, {"post_time": time.time()-t0, "action": action})
        return action
    def _run(self,shared): raise CapabilityMismatchError(f"{_get_node_name(self)} is asynchronous. Use run_async.")
    def run(self,shared,tracer=None): raise CapabilityMismatchError(f"{_get_node_name(self)} is asynchronous. Use run_async.")

def _check_limit(concurrency_limit):
    if concurrency_limit is not None and concurrency_limit<1: raise ValueError("concurrency_limit must be at least 1")
    return concurrency_limit

async def _gather(coros,concurrency_limit):
    """Await all coroutines concurrently; results come back in input order."""
    if not concurrency_limit: return list(await asyncio.gather(*coros))
    sem=asyncio.Semaphore(concurrency_limit)  # per call: semaphores bind to the running loop
    async def gated(c):
        async with sem: return await c
    return list(await asyncio.gather(*(gated(c) for c in coros)))

class AsyncBatchNode(AsyncNode,BatchNode):
    async def _exec(self,items): return [await super(AsyncBatchNode,self)._exec(i) for i in _as_batch(items)]

class AsyncParallelBatchNode(AsyncNode,BatchNode):
    def __init__(self,max_retries=1,wait=0,exponential_backoff=True,max_wait=None,concurrency_limit=None):
        super().__init__(max_retries,wait,exponential_backoff,max_wait); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _exec(self,items):
        return await _gather([super(AsyncParallelBatchNode,self)._exec(i) for i in _as_batch(items)],self.concurrency_limit)

class AsyncFlow(Flow,AsyncNode):
    async def _orch_async(self,shared,params=None):
        tracer = _current_tracer.get()
        curr,p,last_action,steps = copy.copy(self.start_node),{**self.params,**(params or {})},None,0
        while curr is not None:
            self._step(curr,p,steps,tracer); steps+=1
            try: last_action=await curr._run_async(shared) if isinstance(curr,AsyncNode) else curr._run(shared)
            except Exception as exc: _record_error(tracer, curr, exc); raise
            curr=self._advance(curr,last_action,tracer)
        return last_action
    async def _run_async(self,shared): p=await self.prep_async(shared); o=await self._orch_async(shared); return await self.post_async(shared,p,o)
    async def run_async(self,shared,tracer=None):
        if self.successors: warnings.warn("Node won't run successors. Use AsyncFlow.")
        token = _current_tracer.set(tracer) if tracer else None
        tracer = _current_tracer.get(); name = _get_node_name(self)
        if tracer: tracer.record(TraceEventType.FLOW_START, name)
        try: action = await self._run_async(shared)
        finally:
            if token: _current_tracer.reset(token)
        if tracer: tracer.record(TraceEventType.FLOW_END, name, {"action": action})
        return action
    def _run(self,shared): raise CapabilityMismatchError(f"{_get_node_name(self)} is asynchronous. Use run_async.")
    def run(self,shared,tracer=None): raise CapabilityMismatchError(f"{_get_node_name(self)} is asynchronous. Use run_async.")

class AsyncBatchFlow(AsyncFlow,BatchFlow):
    async def _run_async(self,shared):
        pr=await self.prep_async(shared)
        for bp in _param_sets(pr): await self._orch_async(shared,_merge_params(self.params,bp))
        return await self.post_async(shared,pr,None)

class AsyncParallelBatchFlow(AsyncFlow,BatchFlow):
    """Runs one orchestration pass per parameter set, all at once, on the same shared dict.

    Passes are not isolated from each other: the order in which they write to
    ``shared`` is undefined and concurrent writes to one key are last-writer-wins.
    Write to per-pass keys (e.g. keyed by a param) when results must not collide.
    """
    def __init__(self,start=None,max_steps=None,concurrency_limit=None):
        super().__init__(start,max_steps); self.concurrency_limit=_check_limit(concurrency_limit)
    async def _run_async(self,shared):
        pr=await self.prep_async(shared)
        await _gather([self._orch_async(shared,_merge_params(self.params,bp)) for bp in _param_sets(pr)],self.concurrency_limit)
        return await self.post_async(shared,pr,None)

__all__ = [
    "BaseNode", "Node", "BatchNode", "Flow", "BatchFlow",
    "AsyncNode", "AsyncBatchNode", "AsyncParallelBatchNode",
    "AsyncFlow", "AsyncBatchFlow", "AsyncParallelBatchFlow",
    "FlowError", "CapabilityMismatchError", "FlowStepLimitError",
    "FlowTracer", "TraceEvent", "TraceEventType",
]
