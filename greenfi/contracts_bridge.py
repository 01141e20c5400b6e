import os
import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import requests
from dotenv import load_dotenv

from web3 import Web3
from web3.exceptions import Web3Exception
from web3.logs import DISCARD

load_dotenv()

logger = logging.getLogger(__name__)

# Default hardhat address of the first deployment on a fresh localhost node
DEFAULT_CONTRACT_ADDRESS = "0x5FbDB2315678afecb367f032d93F642f64180aa3"
ABI_PATH = os.path.join(os.path.dirname(__file__), "static", "abi.json")


# ---------------------------
# Node / network utilities
# ---------------------------
def get_web3() -> Web3:
    """
    Defaults to a local hardhat node.
    Override via:
      RPC_URL=https://sepolia.infura.io/v3/<key>
    """
    url = os.getenv("RPC_URL", "http://127.0.0.1:8545")
    return Web3(Web3.HTTPProvider(url))


def get_network_hint() -> str:
    return os.getenv("NETWORK", "localhost")


def get_contract_address() -> str:
    return os.getenv("CONTRACT_ADDRESS", DEFAULT_CONTRACT_ADDRESS)


def load_abi(path: str = ABI_PATH) -> List[Dict[str, Any]]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def get_contract(web3: Web3, address: Optional[str] = None):
    return web3.eth.contract(
        address=Web3.to_checksum_address(address or get_contract_address()),
        abi=load_abi(),
    )


# ---------------------------
# Mirror API client
# ---------------------------
class MirrorClient:
    """Posts confirmed transactions to the GreenFi mirror API."""

    def __init__(self, base_url: Optional[str] = None, session=None, timeout: float = 10):
        self.base_url = (base_url or os.getenv("API_URL", "http://localhost:3000/api")).rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = self.session.post(f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            return {"success": False, "error": str(e)}
        try:
            body = resp.json()
        except ValueError:
            body = {"success": False, "error": f"HTTP {resp.status_code}"}
        if not resp.ok:
            body["success"] = False
        return body

    def save_project(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/projects", payload)

    def save_stake(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/stakes", payload)

    def save_withdrawal(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._post("/withdrawals", payload)


# ---------------------------
# Per-action state machine
# ---------------------------
class TxState(str, Enum):
    IDLE = "idle"
    AWAITING_WALLET = "awaiting_wallet"
    AWAITING_BLOCK = "awaiting_block"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


TRANSITIONS = {
    TxState.IDLE: {TxState.AWAITING_WALLET, TxState.FAILED},
    TxState.AWAITING_WALLET: {TxState.AWAITING_BLOCK, TxState.FAILED},
    TxState.AWAITING_BLOCK: {TxState.PERSISTING, TxState.FAILED},
    TxState.PERSISTING: {TxState.DONE, TxState.FAILED},
    TxState.DONE: set(),
    TxState.FAILED: set(),
}


@dataclass
class ActionResult:
    action: str
    state: TxState = TxState.IDLE
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None
    project_id: Optional[int] = None
    amount: Optional[int] = None
    milestone_marked: bool = False
    # soft: the chain transaction went through, only the mirror write failed
    soft: bool = False
    error: Optional[str] = None
    warning: Optional[str] = None
    history: List[TxState] = field(default_factory=lambda: [TxState.IDLE])

    @property
    def ok(self) -> bool:
        return self.state is TxState.DONE


class _StepFailed(Exception):
    pass


class Orchestrator:
    """
    Runs one user action end to end: contract call, receipt, mirror write.

    There are no retries. Receipts are waited for once, one confirmation is
    enough and re-orgs are not handled. A failed mirror write after a
    confirmed transaction is reported as a soft failure; the on-chain effect
    cannot be undone from here.
    """

    def __init__(
        self,
        web3: Web3,
        contract,
        account: str,
        mirror: MirrorClient,
        on_transition: Optional[Callable[[ActionResult], None]] = None,
        receipt_timeout: Optional[float] = None,
    ):
        self.web3 = web3
        self.contract = contract
        self.account = account
        self.mirror = mirror
        self.on_transition = on_transition
        self.receipt_timeout = receipt_timeout or float(os.getenv("RECEIPT_TIMEOUT", "120"))

    # --- transitions ---

    def _move(self, result: ActionResult, state: TxState) -> None:
        if state not in TRANSITIONS[result.state]:
            raise RuntimeError(f"{result.action}: illegal transition {result.state.value} -> {state.value}")
        result.state = state
        result.history.append(state)
        logger.debug(f"{result.action}: {state.value}")
        if self.on_transition:
            self.on_transition(result)

    def _fail(self, result: ActionResult, error: str) -> ActionResult:
        result.error = error
        self._move(result, TxState.FAILED)
        logger.error(f"{result.action} failed: {error}")
        return result

    def _send(self, result: ActionResult, fn, value: int = 0):
        """Submit a contract call and wait for its receipt."""
        self._move(result, TxState.AWAITING_WALLET)
        tx_params = {"from": self.account}
        if value:
            tx_params["value"] = value
        try:
            tx_hash = fn.transact(tx_params)
        except (Web3Exception, ValueError) as e:
            raise _StepFailed(f"Transaction rejected: {e}")

        result.tx_hash = Web3.to_hex(tx_hash)
        self._move(result, TxState.AWAITING_BLOCK)
        logger.info(f"{result.action}: transaction sent {result.tx_hash[:10]}...")

        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except Web3Exception as e:
            raise _StepFailed(f"No receipt for {result.tx_hash}: {e}")
        if receipt["status"] == 0:
            raise _StepFailed(f"Transaction {result.tx_hash} reverted")

        result.block_number = receipt["blockNumber"]
        logger.info(f"{result.action}: confirmed in block {result.block_number}")
        return receipt

    def _persist(self, result: ActionResult, write: Callable[[], Dict[str, Any]]) -> ActionResult:
        self._move(result, TxState.PERSISTING)
        response = write()
        if response.get("success"):
            self._move(result, TxState.DONE)
            return result

        result.soft = True
        result.warning = (
            f"Transaction {result.tx_hash} confirmed but the mirror write failed: "
            f"{response.get('error', 'unknown error')}"
        )
        logger.warning(result.warning)
        self._move(result, TxState.FAILED)
        return result

    # --- helpers ---

    def recover_project_id(self, receipt) -> int:
        """
        Project id from the ProjectCreated log; if the receipt carries none,
        fall back to projectCount() - 1. The fallback is wrong when another
        project was created between this receipt and the read.
        """
        events = self.contract.events.ProjectCreated().process_receipt(receipt, errors=DISCARD)
        for event in events:
            return int(event["args"]["projectId"])

        count = self.contract.functions.projectCount().call()
        logger.warning("ProjectCreated event not found in receipt; using projectCount() - 1")
        return int(count) - 1

    # --- actions ---

    def create_project(self, name: str, description: str = "", funding_goal=0) -> ActionResult:
        result = ActionResult(action="create_project")
        name = (name or "").strip()
        if not name:
            return self._fail(result, "Please enter a project name")

        try:
            receipt = self._send(result, self.contract.functions.createProject())
            result.project_id = self.recover_project_id(receipt)
        except _StepFailed as e:
            return self._fail(result, str(e))
        except (Web3Exception, ValueError) as e:
            return self._fail(result, f"Could not determine project id from {result.tx_hash}: {e}")

        logger.info(f"create_project: project id {result.project_id}")
        return self._persist(result, lambda: self.mirror.save_project({
            "id": result.project_id,
            "owner": self.account.lower(),
            "name": name,
            "description": (description or "").strip(),
            "funds": "0",
            "milestone_reached": False,
            "tx_hash": result.tx_hash,
            "block_number": result.block_number,
            "funding_goal": str(funding_goal),
        }))

    def stake(self, project_id: int, amount_eth) -> ActionResult:
        result = ActionResult(action="stake", project_id=project_id)
        try:
            amount = Decimal(str(amount_eth))
        except InvalidOperation:
            return self._fail(result, "Please enter a valid amount")
        if not amount.is_finite() or amount <= 0:
            return self._fail(result, "Please enter a positive amount")

        result.amount = Web3.to_wei(amount, "ether")
        try:
            self._send(result, self.contract.functions.stake(int(project_id)), value=result.amount)
        except _StepFailed as e:
            return self._fail(result, str(e))

        return self._persist(result, lambda: self.mirror.save_stake({
            "project_id": int(project_id),
            "staker": self.account.lower(),
            "amount": str(result.amount),
            "tx_hash": result.tx_hash,
            "block_number": result.block_number,
        }))

    def _mark_milestone(self, project_id: int) -> bool:
        # Optional step: the contract rejects it when already marked or unmet
        try:
            tx_hash = self.contract.functions.markMilestone(project_id).transact({"from": self.account})
            receipt = self.web3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.receipt_timeout)
        except (Web3Exception, ValueError) as e:
            logger.warning(f"Could not mark milestone for project {project_id}: {e}")
            return False
        return receipt["status"] == 1

    def withdraw(self, project_id: int) -> ActionResult:
        result = ActionResult(action="withdraw", project_id=project_id)
        project_id = int(project_id)

        try:
            onchain = self.contract.functions.projects(project_id).call()
        except (Web3Exception, ValueError) as e:
            return self._fail(result, f"Could not read project {project_id}: {e}")
        owner, funds = onchain[1], int(onchain[2])

        if owner.lower() != self.account.lower():
            return self._fail(result, "You are not the project owner!")

        result.milestone_marked = self._mark_milestone(project_id)
        result.amount = funds

        try:
            self._send(result, self.contract.functions.withdraw(project_id))
        except _StepFailed as e:
            return self._fail(result, str(e))

        return self._persist(result, lambda: self.mirror.save_withdrawal({
            "project_id": project_id,
            "withdrawer": self.account.lower(),
            "amount": str(funds),
            "milestone": result.milestone_marked,
            "tx_hash": result.tx_hash,
            "block_number": result.block_number,
        }))


def build_orchestrator(account: Optional[str] = None, **kwargs) -> Orchestrator:
    """Orchestrator wired to RPC_URL / CONTRACT_ADDRESS / API_URL, signing with a node account."""
    web3 = get_web3()
    if not web3.is_connected():
        raise ConnectionError(f"Failed to connect to {os.getenv('RPC_URL', 'http://127.0.0.1:8545')}")
    account = account or web3.eth.accounts[0]
    return Orchestrator(web3, get_contract(web3), Web3.to_checksum_address(account), MirrorClient(), **kwargs)


def main(argv=None) -> int:
    import argparse

    parser = argparse.ArgumentParser(description="Send a GreenFi transaction and mirror it.")
    parser.add_argument("--account", help="node account to send from (default: first account)")
    sub = parser.add_subparsers(dest="action", required=True)

    create = sub.add_parser("create", help="create a project")
    create.add_argument("name")
    create.add_argument("--description", default="")
    create.add_argument("--goal-wei", default="0")

    stake = sub.add_parser("stake", help="stake ETH in a project")
    stake.add_argument("project_id", type=int)
    stake.add_argument("amount_eth")

    withdraw = sub.add_parser("withdraw", help="withdraw a project's funds")
    withdraw.add_argument("project_id", type=int)

    args = parser.parse_args(argv)
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())

    orchestrator = build_orchestrator(
        args.account,
        on_transition=lambda r: print(f"[{r.action}] {r.state.value}"),
    )
    if args.action == "create":
        result = orchestrator.create_project(args.name, args.description, args.goal_wei)
    elif args.action == "stake":
        result = orchestrator.stake(args.project_id, args.amount_eth)
    else:
        result = orchestrator.withdraw(args.project_id)

    if result.ok:
        print(f"Done: tx {result.tx_hash} (project {result.project_id})")
        return 0
    print(result.warning or result.error)
    return 2 if result.soft else 1


if __name__ == "__main__":
    raise SystemExit(main())
