import os, sys, json
from dotenv import load_dotenv
from web3 import Web3

load_dotenv()

RPC_URL = os.getenv("RPC_URL", "http://127.0.0.1:8545")
DEPLOYER_PRIVATE_KEY = os.getenv("DEPLOYER_PRIVATE_KEY")
# hardhat artifact: artifacts/contracts/GreenFi.sol/GreenFi.json
ARTIFACT_PATH = os.getenv("GREENFI_ARTIFACT", "artifacts/contracts/GreenFi.sol/GreenFi.json")

client = Web3(Web3.HTTPProvider(RPC_URL))
if not client.is_connected():
    raise SystemExit(f"Cannot reach node at {RPC_URL}")


def deploy(artifact_path: str = ARTIFACT_PATH):
    with open(artifact_path, "r", encoding="utf-8") as f:
        artifact = json.load(f)

    factory = client.eth.contract(abi=artifact["abi"], bytecode=artifact["bytecode"])

    if DEPLOYER_PRIVATE_KEY:
        account = client.eth.account.from_key(DEPLOYER_PRIVATE_KEY)
        deployer = account.address
        txn = factory.constructor().build_transaction({
            "from": deployer,
            "nonce": client.eth.get_transaction_count(deployer),
            "chainId": client.eth.chain_id,
        })
        signed = account.sign_transaction(txn)
        txid = client.eth.send_raw_transaction(signed.raw_transaction)
    else:
        # unlocked node account (hardhat / anvil)
        deployer = client.eth.accounts[0]
        txid = factory.constructor().transact({"from": deployer})

    print("Deploying contracts with account:", deployer)
    receipt = client.eth.wait_for_transaction_receipt(txid)
    address = receipt["contractAddress"]
    print("GreenFi deployed to:", address)

    # keep the served ABI in step with the deployed contract
    abi_out = os.path.join(os.path.dirname(__file__), "..", "greenfi", "static", "abi.json")
    with open(abi_out, "w", encoding="utf-8") as f:
        json.dump(artifact["abi"], f, indent=2)
    print("Wrote ABI:", os.path.normpath(abi_out))

    return address


if __name__ == "__main__":
    address = deploy(sys.argv[1] if len(sys.argv) > 1 else ARTIFACT_PATH)
    print(f"Set CONTRACT_ADDRESS={address} in .env")
