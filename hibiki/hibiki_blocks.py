"""
Expression and handler-block engines.

The runtime never parses expression syntax itself; it calls a BlockEngine to
evaluate expressions and to parse and run handler blocks. YamlBlockEngine is
the default engine: a handler block is a YAML list of steps, and an
expression is either a path (`$state.x`, `@name`) or a YAML scalar/literal.

Step kinds:

    - set: $state.user          # with value: / expr: / ref:
      value: {name: "mike"}
    - fire: refresh             # with data: {...} and bubble: true|false
    - call: /@fetch:GET         # with args: [...], into: <path>, pure: true|false
    - invalidate: "^/users"
    - actions: [{type: setdata, selector: "$state.x", data: 1}]
    - log: {expr: "$state.x"}
    - return: {expr: "@params"}

Inside step arguments `{expr: <path>}` evaluates a path and `{ref: <path>}`
produces the LValue itself.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, List, Optional, Tuple

import yaml

from hibiki.hibiki_datatypes import EventType, RuntimeContext


STEP_KINDS = ("set", "fire", "call", "invalidate", "actions", "log", "return")


class BlockEngine(ABC):
    @abstractmethod
    def evaluate(self, source_text: Optional[str], env, label: Optional[str] = None) -> Any:
        ...

    @abstractmethod
    def parse_block(self, text: Optional[str]) -> Any:
        ...

    @abstractmethod
    async def execute_block(self, block: Any, env, rtctx: RuntimeContext) -> Any:
        ...


class YamlBlockEngine(BlockEngine):

    def evaluate(self, source_text: Optional[str], env, label: Optional[str] = None) -> Any:
        if source_text is None:
            return None
        text = str(source_text).strip()
        if text == "":
            return None
        if text[0] in "$@":
            return env.resolve_path(text)
        return yaml.safe_load(text)

    def parse_block(self, text: Optional[str]) -> List[Mapping]:
        if text is None or str(text).strip() == "":
            return []
        steps = yaml.safe_load(text)
        if isinstance(steps, Mapping):
            steps = [steps]
        if not isinstance(steps, list):
            raise ValueError(f"handler block must be a list of steps, got {type(steps).__name__}")
        for step in steps:
            if not isinstance(step, Mapping) or not any(k in step for k in STEP_KINDS):
                raise ValueError(f"unknown handler step: {step!r}")
        return steps

    async def execute_block(self, block: List[Mapping], env, rtctx: RuntimeContext) -> Any:
        for step in block:
            done, rv = await self.run_step(step, env, rtctx)
            if done:
                return rv
        return None

    async def run_step(self, step: Mapping, env, rtctx: RuntimeContext) -> Tuple[bool, Any]:
        state = env.state
        if "return" in step:
            return True, self.arg(step["return"], env)
        if "set" in step:
            env.make_lvalue(step["set"]).set(self.step_value(step, env))
        elif "fire" in step:
            data = self.arg(step.get("data") or {}, env)
            if not isinstance(data, Mapping):
                raise ValueError(f"fire data must be a mapping, got {type(data).__name__}")
            event = EventType(str(step["fire"]), dict(data), bubble=bool(step.get("bubble", False)))
            await env.fire_event(event, rtctx)
        elif "call" in step:
            path = str(step["call"])
            args = self.arg(step.get("args") or [], env)
            if not isinstance(args, list):
                args = [args]
            rtctx.push_context(f"Calling handler {path}")
            rv = await state.call_handler_internal(path, args, bool(step.get("pure", False)), rtctx=rtctx)
            rtctx.pop_context()
            if step.get("into"):
                env.make_lvalue(step["into"]).set(rv)
        elif "invalidate" in step:
            state.invalidate_regex(str(step["invalidate"]))
        elif "actions" in step:
            state.process_actions(self.arg(step["actions"], env))
        elif "log" in step:
            state.log(self.arg(step["log"], env))
        return False, None

    def step_value(self, step: Mapping, env) -> Any:
        if "value" in step:
            return self.arg(step["value"], env)
        if "expr" in step:
            return self.evaluate(step["expr"], env)
        if "ref" in step:
            return env.make_lvalue(step["ref"])
        return None

    def arg(self, val: Any, env) -> Any:
        if isinstance(val, Mapping):
            if len(val) == 1 and "expr" in val:
                return self.evaluate(val["expr"], env)
            if len(val) == 1 and "ref" in val:
                return env.make_lvalue(val["ref"])
            return {k: self.arg(v, env) for k, v in val.items()}
        if isinstance(val, list):
            return [self.arg(v, env) for v in val]
        return val
