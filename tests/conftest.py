import pytest

from vidsolve.core.errors import SandboxEvalError
from vidsolve.core.models import EvaluationResponse

BUNDLE_URL = "https://www.youtube.com/s/player/0057c4d4/player_ias.vflset/en_US/base.js"

PLAYER_JS = r'''
var Xy={ab:function(a){a.reverse()},cd:function(a,b){a.splice(0,b)}};
var Ab=function(a){a=a.split("");Xy.ab(a);Xy.cd(a,2);return a.join("")};
var Nf=function(a){var b=a.split("");b.reverse();return b.join("")};
var cfg={x:1,sts:19834};
function sig(c,d,b){c&&d.set(b,encodeURIComponent(Ab(c)))}
function nfix(a,b){a.D&&(b=a.get("n"))&&(b=Nf(b),a.set("n",b))}
'''

NO_TRANSFORMS_JS = "var cfg={x:1,sts:19834};function noop(a){return a}"


class FakeBundleSource:
    def __init__(self, js=PLAYER_JS, located=BUNDLE_URL):
        self.js = js
        self.located = located
        self.fetched = []
        self.locate_calls = 0

    async def fetch(self, url):
        self.fetched.append(url)
        return self.js

    async def locate(self):
        self.locate_calls += 1
        return self.located


class ReversingEvaluator:
    """Stands in for the sandbox: n-sig reverses, cipher reverses and drops two."""

    def __init__(self, fail_inputs=()):
        self.calls = []
        self.fail_inputs = set(fail_inputs)

    async def evaluate(self, kind, code, arg_name, inputs):
        self.calls.append((kind, list(inputs)))
        results, errors = [], []
        for i, value in enumerate(inputs):
            if value in self.fail_inputs:
                results.append(value)
                errors.append(SandboxEvalError(kind, "boom", i))
            elif kind == "cipher":
                results.append(value[::-1][2:])
            else:
                results.append(value[::-1])
        return EvaluationResponse(results=results, errors=errors)


@pytest.fixture
def bundle_source():
    return FakeBundleSource()


@pytest.fixture
def evaluator():
    return ReversingEvaluator()
