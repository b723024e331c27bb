import sys
import threading

from coreml_llama import LlamaInference


def main():
    model_path = sys.argv[1] if len(sys.argv) > 1 else "llama-2-7b-chat.mlpackage"
    prompt = sys.argv[2] if len(sys.argv) > 2 else "What is the Attention Mechanism in LLMs?"

    inference = LlamaInference(model_path)
    done = threading.Event()

    def on_text(text, error):
        print(f"Error: {error}" if error else text)
        done.set()

    def on_load(ok, error):
        if not ok:
            print(f"Failed to load model: {error}")
            done.set()
            return
        inference.generate(prompt, on_text, max_tokens=64)

    inference.load(on_load)
    done.wait()
    print(inference.profiler.summary())
    inference.close()


if __name__ == "__main__":
    main()
