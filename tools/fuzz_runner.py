#!/usr/bin/env python3
# tools/fuzz_runner.py
#
# Robustness and differential fuzzing for safeunpickle.
#
# Generates four fuzz categories:
#   A) every proper prefix of a good conformance vector -> must be ERR_TRUNCATED
#   B) random byte mutations of conformance vectors -> value or DecodeError
#   C) random opcode soup -> value or DecodeError
#   D) random plain trees -> stdlib pickle.dumps (random protocol) -> decode
#      must reproduce the tree
#
# Any other exception, or any mismatch, prints a minimal repro payload and
# exits non-zero.

import os, sys, json, random, pickle, traceback
from typing import Any, Dict, List

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, ROOT)

from safeunpickle import DecodeError, ERR_TRUNCATED, decode
from safeunpickle import _constants

SEED = int(os.environ.get("SAFEUNPICKLE_SEED", "4242"))
ROUNDS = int(os.environ.get("SAFEUNPICKLE_FUZZ_ROUNDS", "5000"))
VECTORS = os.path.join(ROOT, "conformance", "conformance_vectors.json")

random.seed(SEED)

OPCODES = [v for k, v in sorted(vars(_constants).items())
           if k.isupper() and isinstance(v, bytes) and len(v) == 1]

def load_vectors() -> List[bytes]:
    with open(VECTORS, "r", encoding="utf-8") as f:
        return [bytes.fromhex(v["input_hex"]) for v in json.load(f)["vectors"]]

def value_or_err(data: bytes) -> Dict[str, Any]:
    try:
        return {"value": decode(data)}
    except DecodeError as e:
        return {"err": e.code}

def crash(label: str, data: bytes, ctx: Dict[str, Any]) -> None:
    print("CRASH:", label)
    traceback.print_exc()
    print("INPUT_HEX:", data.hex())
    print("CTX:", json.dumps(ctx)[:4000])
    raise SystemExit(1)

def mismatch(label: str, got: Any, want: Any, ctx: Dict[str, Any]) -> None:
    print("MISMATCH:", label)
    print("GOT :", repr(got)[:2000])
    print("WANT:", repr(want)[:2000])
    print("CTX:", json.dumps(ctx)[:4000])
    raise SystemExit(1)

def checked(label: str, data: bytes, ctx: Dict[str, Any]) -> Dict[str, Any]:
    try:
        return value_or_err(data)
    except Exception:
        crash(label, data, ctx)
        raise

# --- generators ---

def mutate(data: bytes) -> bytes:
    buf = bytearray(data)
    for _ in range(random.randint(1, 4)):
        r = random.random()
        if r < 0.4 and buf:
            buf[random.randrange(len(buf))] = random.getrandbits(8)
        elif r < 0.7:
            buf.insert(random.randint(0, len(buf)), random.getrandbits(8))
        elif buf:
            del buf[random.randrange(len(buf))]
    return bytes(buf)

def rand_operand() -> bytes:
    r = random.random()
    if r < 0.3:
        return bytes(random.getrandbits(8) for _ in range(random.randint(0, 9)))
    if r < 0.6:
        return str(random.randint(-300, 300)).encode("ascii") + b"\n"
    return b""

def opcode_soup() -> bytes:
    out = bytearray()
    if random.random() < 0.5:
        out += b"\x80" + bytes([random.randint(0, 5)])
    for _ in range(random.randint(1, 30)):
        out += random.choice(OPCODES) + rand_operand()
    if random.random() < 0.8:
        out += b"."
    return bytes(out)

def rand_ascii(nmax: int) -> str:
    n = random.randint(0, nmax)
    return "".join(chr(random.randint(0x20, 0x7E)) for _ in range(n))

def rand_tree() -> Any:
    def leaf():
        return random.choice([
            None, True, False,
            random.randint(-2 ** 70, 2 ** 70),
            random.randint(-300, 70000),
            random.uniform(-1e9, 1e9),
            rand_ascii(12) + random.choice(["", "\xe9", "€", "\U0001f600", "\\", "\n"]),
            bytes(random.getrandbits(8) for _ in range(random.randint(0, 12))),
        ])
    def gen(depth: int):
        if depth > 4 or random.random() < 0.4:
            return leaf()
        r = random.random()
        if r < 0.35:
            return {rand_ascii(8): gen(depth + 1) for _ in range(random.randint(0, 4))}
        if r < 0.7:
            return [gen(depth + 1) for _ in range(random.randint(0, 4))]
        if r < 0.85:
            return tuple(gen(depth + 1) for _ in range(random.randint(0, 4)))
        return {random.randint(0, 99) for _ in range(random.randint(0, 4))}
    return gen(0)

def main() -> int:
    vectors = load_vectors()
    good = [v for v in vectors if "value" in value_or_err(v)]

    # A) truncation of every good vector, exhaustively
    for data in good:
        for n in range(len(data)):
            got = checked("A truncation", data[:n], {"prefix": n})
            if got != {"err": ERR_TRUNCATED}:
                mismatch("A truncation", got, ERR_TRUNCATED, {"input_hex": data.hex(), "prefix": n})

    for i in range(ROUNDS):
        r = random.random()

        # B) mutated vectors
        if r < 0.35:
            data = mutate(random.choice(vectors))
            checked("B mutation", data, {"round": i})
            continue

        # C) opcode soup
        if r < 0.65:
            data = opcode_soup()
            checked("C opcode soup", data, {"round": i})
            continue

        # D) stdlib pickler differential
        tree = rand_tree()
        proto = random.randint(0, pickle.HIGHEST_PROTOCOL)
        data = pickle.dumps(tree, protocol=proto)
        got = checked("D stdlib", data, {"round": i, "protocol": proto})
        if got != {"value": tree}:
            mismatch("D stdlib", got, tree, {"round": i, "protocol": proto, "input_hex": data.hex()})

    print(f"OK: fuzz rounds={ROUNDS} seed={SEED} (no crashes, no mismatches)")
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
